import pytest
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock

from paygate.shared.core.events import EventBus


@dataclass(frozen=True)
class _Ping:
    value: int


@dataclass(frozen=True)
class _Other:
    value: int


@pytest.mark.asyncio
async def test_publish_invokes_sync_and_async_handlers_for_type():
    bus = EventBus()
    sync_handler = MagicMock()
    async_handler = AsyncMock()
    other_handler = MagicMock()
    bus.subscribe(_Ping, sync_handler)
    bus.subscribe(_Ping, async_handler)
    bus.subscribe(_Other, other_handler)

    await bus.publish(_Ping(1))

    sync_handler.assert_called_once_with(_Ping(1))
    async_handler.assert_awaited_once_with(_Ping(1))
    other_handler.assert_not_called()


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    async def broken(_event):
        raise RuntimeError("smtp down")

    async def healthy(event):
        received.append(event)

    bus.subscribe(_Ping, broken)
    bus.subscribe(_Ping, healthy)

    await bus.publish(_Ping(2))

    assert received == [_Ping(2)]


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_noop():
    await EventBus().publish(_Ping(3))
    assert EventBus().handlers_for(_Ping) == []
