"""Live history fan-out to connected WebSocket clients.

Push is best-effort: there is no per-connection queue, and a client that
drops simply misses updates until it reconnects and receives a fresh
snapshot.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from history_relay.core.models import HistoryEntry
from history_relay.infra.repos.history import HistoryStore
from history_relay.observability.metrics import (
    BROADCAST_DELIVERIES_TOTAL,
    BROADCAST_FAILURES_TOTAL,
    LIVE_CONNECTIONS,
)


class LiveConnection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionClosedError(ConnectionError):
    pass


class _Registered:
    """A registered connection plus the lock that serializes its sends.

    The lock is held from registration until the snapshot has been written,
    so concurrent broadcasts queue behind the snapshot instead of overtaking it.
    """

    __slots__ = ("conn", "send_lock", "closed")

    def __init__(self, conn: LiveConnection):
        self.conn = conn
        self.send_lock = asyncio.Lock()
        self.closed = False

    async def send(self, message: dict) -> None:
        async with self.send_lock:
            if self.closed:
                raise ConnectionClosedError("connection already closed")
            await self.conn.send_json(message)


class LiveBroadcaster:
    def __init__(self, store: HistoryStore, *, snapshot_limit: int = 50):
        self.store = store
        self.snapshot_limit = max(1, int(snapshot_limit))
        self._lock = asyncio.Lock()
        self._connections: dict[int, _Registered] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def unregister(self, conn: LiveConnection) -> None:
        async with self._lock:
            reg = self._connections.pop(id(conn), None)
            LIVE_CONNECTIONS.set(len(self._connections))
        if reg is not None:
            reg.closed = True

    async def on_connect(self, conn: LiveConnection) -> bool:
        """Register `conn` and send it exactly one snapshot.

        Returns False (and closes the connection) when the snapshot could not
        be read or written.
        """
        reg = _Registered(conn)
        await reg.send_lock.acquire()
        try:
            async with self._lock:
                self._connections[id(conn)] = reg
                LIVE_CONNECTIONS.set(len(self._connections))
            try:
                entries = await self.store.latest(self.snapshot_limit)
                await conn.send_json({"type": "snapshot", "data": [e.to_wire() for e in entries]})
            except Exception as exc:
                logger.warning("live snapshot failed; dropping connection: {}", exc)
                await self.unregister(conn)
                try:
                    await conn.close(code=1011)
                except Exception:
                    pass
                return False
        finally:
            reg.send_lock.release()
        logger.debug("live connection registered (total={})", self.connection_count)
        return True

    async def broadcast(self, entry: HistoryEntry) -> int:
        """Send one update to every registered connection; returns the delivered count."""
        message = {"type": "update", "data": entry.to_wire()}
        async with self._lock:
            targets = list(self._connections.values())
        if not targets:
            return 0

        results = await asyncio.gather(*(reg.send(message) for reg in targets), return_exceptions=True)
        delivered = 0
        for reg, outcome in zip(targets, results):
            if isinstance(outcome, BaseException):
                BROADCAST_FAILURES_TOTAL.inc()
                logger.debug("live send failed; unregistering connection: {}", outcome)
                await self.unregister(reg.conn)
            else:
                delivered += 1
        BROADCAST_DELIVERIES_TOTAL.inc(delivered)
        return delivered

    async def send_ping(self, conn: LiveConnection) -> None:
        async with self._lock:
            reg = self._connections.get(id(conn))
        if reg is None:
            raise ConnectionClosedError("connection not registered")
        await reg.send({"type": "ping"})

    async def close_all(self) -> None:
        async with self._lock:
            regs = list(self._connections.values())
            self._connections.clear()
            LIVE_CONNECTIONS.set(0)
        for reg in regs:
            reg.closed = True
            try:
                await reg.conn.close(code=1001)
            except Exception:
                pass
