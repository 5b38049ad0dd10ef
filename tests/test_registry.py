"""Unit tests for ConnectionRegistry."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from registry import ConnectionRegistry


@pytest.mark.asyncio
async def test_count_tracks_registers_minus_unregisters():
    registry = ConnectionRegistry()
    ids = [await registry.register(AsyncMock()) for _ in range(3)]
    assert registry.count == 3
    assert len(set(ids)) == 3

    assert await registry.unregister(ids[0]) is True
    assert registry.count == 2

    # Double unregister is a no-op
    assert await registry.unregister(ids[0]) is False
    assert await registry.unregister("unknown") is False
    assert len(registry) == 2


@pytest.mark.asyncio
async def test_broadcast_invokes_every_emit_once_with_payload():
    registry = ConnectionRegistry()
    emits = [AsyncMock() for _ in range(4)]
    for emit in emits:
        await registry.register(emit)

    delivered = await registry.broadcast('{"message":"hi"}')

    assert delivered == 4
    for emit in emits:
        emit.assert_awaited_once_with('{"message":"hi"}')


@pytest.mark.asyncio
async def test_broadcast_uses_snapshot_under_concurrent_mutation():
    registry = ConnectionRegistry()
    late = AsyncMock()
    calls = []
    ids = []

    async def mutating_emit(payload):
        calls.append(payload)
        # Register a newcomer and remove a peer mid-broadcast
        await registry.register(late)
        await registry.unregister(ids[-1])

    async def plain_emit(payload):
        calls.append(payload)

    ids.append(await registry.register(mutating_emit))
    for _ in range(2):
        ids.append(await registry.register(plain_emit))

    delivered = await registry.broadcast("x")

    assert delivered == 3
    assert calls == ["x", "x", "x"]
    late.assert_not_awaited()
    assert registry.count == 3


@pytest.mark.asyncio
async def test_failed_emit_drops_only_that_connection():
    registry = ConnectionRegistry()
    good = AsyncMock()
    bad = AsyncMock(side_effect=ConnectionResetError("broken pipe"))
    await registry.register(good)
    bad_id = await registry.register(bad)

    delivered = await registry.broadcast("first")

    assert delivered == 1
    assert await registry.get(bad_id) is None
    assert registry.count == 1

    await registry.broadcast("second")
    assert bad.await_count == 1
    assert good.await_count == 2


@pytest.mark.asyncio
async def test_failed_emit_calls_close_hook():
    registry = ConnectionRegistry()
    conn_id = None

    async def close():
        await registry.unregister(conn_id)

    close_hook = AsyncMock(side_effect=close)
    conn_id = await registry.register(AsyncMock(side_effect=RuntimeError("boom")), close_hook)

    await registry.broadcast("x")

    close_hook.assert_awaited_once()
    assert registry.count == 0


@pytest.mark.asyncio
async def test_failing_close_hook_still_unregisters():
    registry = ConnectionRegistry()
    await registry.register(
        AsyncMock(side_effect=RuntimeError("boom")),
        AsyncMock(side_effect=RuntimeError("hook failed")),
    )

    await registry.broadcast("x")

    assert registry.count == 0


@pytest.mark.asyncio
async def test_slow_emit_times_out_and_is_dropped():
    registry = ConnectionRegistry(emit_timeout=0.05)
    fast = AsyncMock()

    async def stalled(payload):
        await asyncio.sleep(10)

    await registry.register(stalled)
    await registry.register(fast)

    delivered = await registry.broadcast("x")

    assert delivered == 1
    fast.assert_awaited_once_with("x")
    assert registry.count == 1


@pytest.mark.asyncio
async def test_close_all_and_list_connections():
    registry = ConnectionRegistry()
    close_hook = AsyncMock()
    await registry.register(AsyncMock(), close_hook)
    await registry.register(AsyncMock())

    listed = await registry.list_connections()
    assert len(listed) == 2
    assert {"connection_id", "created_at"} <= set(listed[0])

    await registry.close_all()

    close_hook.assert_awaited_once()
    # The hook is a mock and does not unregister; the plain connection is gone
    assert registry.count == 1
