import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Union
from uuid import UUID

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from paygate.shared.core.config import get_settings
from paygate.shared.core.constants import TENANT_SCOPED_TABLES
from paygate.shared.core.exceptions import TenantContextError
from paygate.shared.core.ops_metrics import (
    TENANT_SCOPE_LATENCY,
    TENANT_SCOPE_VIOLATIONS,
)

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `paygate/main.py`.
import paygate.models  # noqa: F401, E402

_TENANT_TABLE_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(table) for table in TENANT_SCOPED_TABLES) + r")\b"
)
_WRITE_VERBS = {"insert", "update", "delete"}


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    is_testing = bool(getattr(settings_obj, "TESTING", False))
    allow_test_database_url = bool(getattr(settings_obj, "ALLOW_TEST_DATABASE_URL", False))
    if is_testing and not db_url:
        return "sqlite+aiosqlite:///:memory:"
    if is_testing and "sqlite" not in db_url and not allow_test_database_url:
        # Safety: protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_recycle": getattr(settings_obj, "DB_POOL_RECYCLE", 3600),
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
    else:
        pool_config.update(
            {
                "pool_size": int(getattr(settings_obj, "DB_POOL_SIZE", 20)),
                "max_overflow": int(getattr(settings_obj, "DB_MAX_OVERFLOW", 10)),
                "pool_timeout": int(getattr(settings_obj, "DB_POOL_TIMEOUT", 30)),
            }
        )
    return pool_config


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    db_url = str(getattr(settings_obj, "DATABASE_URL", "") or "").strip()
    if not db_url and not bool(getattr(settings_obj, "TESTING", False)):
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    connect_args: dict[str, Any] = {}
    if "postgresql" in effective_url:
        connect_args["statement_cache_size"] = 0  # Required behind pgbouncer/Supavisor

    engine = create_async_engine(
        effective_url,
        **_build_pool_config(settings_obj, effective_url),
        connect_args=connect_args,
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is None:
        return
    try:
        runtime.engine.sync_engine.dispose()
    except Exception as exc:
        logger.debug("db_runtime_dispose_skipped", error=str(exc), exc_info=True)


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    starts = conn.info.get("query_start_time") or []
    if not starts:
        return
    total = time.perf_counter() - starts.pop(-1)
    threshold = float(get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS or 0.2)
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None,
        )


def session_backend(session: AsyncSession) -> str:
    """Dialect name of the session's bind (`postgresql`, `sqlite`, ...)."""
    bind = getattr(session, "bind", None)
    dialect_name = getattr(getattr(bind, "dialect", None), "name", None)
    if isinstance(dialect_name, str) and dialect_name:
        return dialect_name.lower()
    effective_url = _resolve_effective_url(get_settings())
    if "postgresql" in effective_url:
        return "postgresql"
    if "sqlite" in effective_url:
        return "sqlite"
    return "unknown"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def tenant_scope(
    session: AsyncSession, tenant_id: Union[UUID, str]
) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work under a tenant context.

    On PostgreSQL the tenant id is bound with `set_config(..., true)`, which is
    transaction-local, so the scope commits on exit and rolls back on error.
    Writes to tenant tables are only accepted while the connection is marked.
    """
    if not tenant_id:
        raise TenantContextError("tenant_scope requires a tenant id")

    tenant_key = str(tenant_id)
    conn = await session.connection()
    if session_backend(session) == "postgresql":
        start = time.perf_counter()
        await session.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {"tid": tenant_key},
        )
        TENANT_SCOPE_LATENCY.observe(time.perf_counter() - start)
    conn.info["tenant_id"] = tenant_key
    session.info["tenant_id"] = tenant_key

    try:
        yield session
        await session.flush()
    except Exception:
        conn.info.pop("tenant_id", None)
        session.info.pop("tenant_id", None)
        await session.rollback()
        raise
    conn.info.pop("tenant_id", None)
    session.info.pop("tenant_id", None)
    await session.commit()


@event.listens_for(Engine, "before_cursor_execute", retval=True)
def check_tenant_scope(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> tuple[str, Any]:
    """
    Refuse INSERT/UPDATE/DELETE on tenant tables issued outside tenant_scope().
    """
    settings = get_settings()
    if not settings.ENFORCE_TENANT_SCOPE:
        return statement, parameters
    if settings.TESTING and not settings.ENFORCE_TENANT_SCOPE_IN_TESTS:
        return statement, parameters

    stmt_stripped = statement.lstrip().lower()
    if not stmt_stripped:
        return statement, parameters
    verb = stmt_stripped.split(None, 1)[0]
    if verb not in _WRITE_VERBS:
        return statement, parameters
    if not _TENANT_TABLE_PATTERN.search(stmt_stripped):
        return statement, parameters
    if conn.info.get("tenant_id"):
        return statement, parameters

    TENANT_SCOPE_VIOLATIONS.labels(statement_type=verb.upper()).inc()
    logger.critical(
        "tenant_scope_violation_detected",
        statement=statement[:500],
    )
    raise TenantContextError(
        "Tenant context missing - write aborted",
        details={
            "reason": "Multi-tenant isolation enforcement failed",
            "action": "Wrap tenant writes in tenant_scope(session, tenant_id).",
        },
    )


async def health_check() -> Dict[str, Any]:
    """Database health check for monitoring."""
    start_time = time.perf_counter()
    try:
        db_engine = get_engine()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        latency = (time.perf_counter() - start_time) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency, 2),
            "engine": db_engine.dialect.name,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "down",
            "error": str(e),
            "latency_ms": (time.perf_counter() - start_time) * 1000,
        }
