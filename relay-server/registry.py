"""Connection registry for fanning out push events to open event streams."""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional

from config import EMIT_TIMEOUT

logger = logging.getLogger("relay.registry")

EmitFn = Callable[[str], Awaitable[None]]
CloseFn = Callable[[], Awaitable[None]]


@dataclass
class Connection:
    connection_id: str
    emit: EmitFn
    close: Optional[CloseFn] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "created_at": self.created_at,
        }


class ConnectionRegistry:
    """Owns every open connection, keyed by a random identifier.

    Connections are registered with an emit capability (any transport can
    provide one) and an optional close hook. The hook is the owning stream's
    cancellation callback; the registry calls it when an emit fails so the
    stream tears itself down and unregisters.
    """

    def __init__(self, emit_timeout: float = EMIT_TIMEOUT):
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._emit_timeout = emit_timeout

    def __len__(self) -> int:
        return len(self._connections)

    @property
    def count(self) -> int:
        return len(self._connections)

    async def register(self, emit: EmitFn, close: Optional[CloseFn] = None) -> str:
        """Register a connection. Returns its new identifier."""
        async with self._lock:
            connection_id = uuid.uuid4().hex
            while connection_id in self._connections:
                connection_id = uuid.uuid4().hex
            self._connections[connection_id] = Connection(
                connection_id=connection_id,
                emit=emit,
                close=close,
            )
        logger.info("Connection opened: %s (%d open)", connection_id, self.count)
        return connection_id

    async def unregister(self, connection_id: str) -> bool:
        """Remove a connection. Returns False if it was not registered."""
        async with self._lock:
            removed = self._connections.pop(connection_id, None)
        if removed is None:
            return False
        logger.info("Connection closed: %s (%d open)", connection_id, self.count)
        return True

    async def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    async def list_connections(self) -> list[dict]:
        async with self._lock:
            return [c.to_dict() for c in self._connections.values()]

    async def broadcast(self, payload: str) -> int:
        """Send payload to every connection registered at call time.

        Iterates a snapshot, so connections registered or removed while the
        broadcast is in flight never disturb the loop. Returns the number of
        successful deliveries.
        """
        async with self._lock:
            snapshot = list(self._connections.values())

        delivered = 0
        for conn in snapshot:
            try:
                await asyncio.wait_for(conn.emit(payload), timeout=self._emit_timeout)
                delivered += 1
            except Exception as e:
                logger.warning("Emit to %s failed, dropping connection: %s", conn.connection_id, e)
                await self._drop(conn)
        return delivered

    async def close_all(self):
        """Close every open connection (server shutdown)."""
        async with self._lock:
            snapshot = list(self._connections.values())
        for conn in snapshot:
            await self._drop(conn)

    async def _drop(self, conn: Connection):
        if conn.close is None:
            await self.unregister(conn.connection_id)
            return
        try:
            await conn.close()
        except Exception as e:
            logger.error("Close hook for %s failed: %s", conn.connection_id, e)
            await self.unregister(conn.connection_id)
