from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from paygate.modules.billing.api.v1.billing import router as billing_router
from paygate.modules.billing.api.v1.gateway_admin import router as gateway_admin_router
from paygate.shared.core.config import get_settings, reload_settings_from_environment
from paygate.shared.core.exceptions import PaygateException
from paygate.shared.core.logging import setup_logging
from paygate.shared.core.ops_metrics import API_ERRORS_TOTAL
from paygate.shared.db.session import get_engine, health_check as db_health_check

setup_logging()
logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info(
        "app_starting",
        app_name=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
        billing_scope=settings.BILLING_SCOPE,
    )

    yield

    logger.info("app_stopping")
    await get_engine().dispose()
    logger.info("db_engine_disposed")


paygate_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = paygate_app

__all__ = ["app", "paygate_app", "lifespan"]


def _error_response(request: Request, status_code: int, content: dict[str, Any]) -> JSONResponse:
    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=status_code
    ).inc()
    return JSONResponse(status_code=status_code, content=content)


@paygate_app.exception_handler(PaygateException)
async def paygate_exception_handler(request: Request, exc: PaygateException) -> JSONResponse:
    """Domain errors carry their own status code and machine-readable code."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    message = exc.message
    if is_prod and exc.status_code >= 500:
        message = "An error occurred while processing your request"
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "api_request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return _error_response(
        request,
        exc.status_code,
        {"error": message, "code": exc.code, "details": exc.details},
    )


@paygate_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    response = _error_response(
        request,
        exc.status_code,
        {"error": detail_text, "code": "http_error", "details": {}},
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@paygate_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error_response(
        request,
        422,
        {"error": "Request validation failed", "code": "validation_error", "details": {"errors": errors}},
    )


@paygate_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "api_unhandled_exception",
        path=request.url.path,
        error=str(exc),
        exc_info=True,
    )
    return _error_response(
        request,
        500,
        {"error": "An unexpected internal error occurred", "code": "internal_error", "details": {}},
    )


@paygate_app.get("/health/live", tags=["Lifecycle"])
async def liveness_check() -> dict[str, str]:
    return {"status": "healthy"}


@paygate_app.get("/health", tags=["Lifecycle"])
async def health() -> Any:
    database = await db_health_check()
    body = {"status": "healthy" if database["status"] == "up" else "unhealthy", "database": database}
    if database["status"] == "down":
        return JSONResponse(status_code=503, content=body)
    return body


paygate_app.include_router(billing_router, prefix="/api/v1/billing")
paygate_app.include_router(gateway_admin_router, prefix="/api/v1/billing")

Instrumentator().instrument(paygate_app).expose(paygate_app)
