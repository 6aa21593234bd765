import asyncio
import dataclasses
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from history_relay.config import get_settings
from history_relay.core.models import HistoryEntry
from history_relay.infra.events.broadcaster import LiveBroadcaster
from history_relay.infra.repos.history import HistoryStore


class FakeConnection:
    def __init__(self, *, fail_sends: bool = False):
        self.fail_sends = fail_sends
        self.sent: list[dict] = []
        self.closed_with: int | None = None

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code


class GatedStore(HistoryStore):
    """Holds `latest()` until the test opens the gate."""

    def __init__(self, settings, gate: asyncio.Event):
        super().__init__(settings)
        self.gate = gate

    async def latest(self, limit=None):
        await self.gate.wait()
        return await super().latest(limit)


def _entry(entry_id: str, minutes: int = 0) -> HistoryEntry:
    return HistoryEntry(
        id=entry_id,
        result={"decision": True},
        source_ref=f"http://ingest/pdf/{entry_id}",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


class LiveBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tmpdir.name) / "live.db"
        self.settings = dataclasses.replace(get_settings(), db_path=db_path)
        self.store = HistoryStore(self.settings)
        await self.store.init()
        self.broadcaster = LiveBroadcaster(self.store, snapshot_limit=2)

    async def asyncTearDown(self):
        self._tmpdir.cleanup()

    async def test_snapshot_is_first_message_and_bounded(self):
        for idx in range(3):
            await self.store.insert(_entry(f"s{idx}", minutes=idx))
        conn = FakeConnection()
        self.assertTrue(await self.broadcaster.on_connect(conn))

        self.assertEqual(len(conn.sent), 1)
        first = conn.sent[0]
        self.assertEqual(first["type"], "snapshot")
        self.assertEqual([e["id"] for e in first["data"]], ["s2", "s1"])
        self.assertEqual(self.broadcaster.connection_count, 1)

    async def test_fan_out_reaches_all_three_connections(self):
        conns = [FakeConnection() for _ in range(3)]
        for conn in conns:
            await self.broadcaster.on_connect(conn)

        delivered = await self.broadcaster.broadcast(_entry("7"))

        self.assertEqual(delivered, 3)
        for conn in conns:
            self.assertEqual([m["type"] for m in conn.sent], ["snapshot", "update"])
            self.assertEqual(conn.sent[1]["data"]["id"], "7")

    async def test_failing_connection_is_isolated_and_dropped(self):
        good_a, bad, good_b = FakeConnection(), FakeConnection(), FakeConnection()
        for conn in (good_a, bad, good_b):
            await self.broadcaster.on_connect(conn)
        bad.fail_sends = True

        delivered = await self.broadcaster.broadcast(_entry("8"))

        self.assertEqual(delivered, 2)
        self.assertEqual(self.broadcaster.connection_count, 2)
        self.assertEqual(good_a.sent[-1]["data"]["id"], "8")
        self.assertEqual(good_b.sent[-1]["data"]["id"], "8")

        # Dropped connection receives nothing further.
        bad.fail_sends = False
        await self.broadcaster.broadcast(_entry("9"))
        self.assertEqual([m["type"] for m in bad.sent], ["snapshot"])

    async def test_broadcast_without_connections_is_noop(self):
        self.assertEqual(await self.broadcaster.broadcast(_entry("1")), 0)

    async def test_update_waits_for_pending_snapshot(self):
        gate = asyncio.Event()
        broadcaster = LiveBroadcaster(GatedStore(self.settings, gate), snapshot_limit=5)
        conn = FakeConnection()

        connect_task = asyncio.create_task(broadcaster.on_connect(conn))
        while broadcaster.connection_count == 0:
            await asyncio.sleep(0)
        broadcast_task = asyncio.create_task(broadcaster.broadcast(_entry("late")))
        await asyncio.sleep(0.01)
        self.assertEqual(conn.sent, [])

        gate.set()
        await asyncio.gather(connect_task, broadcast_task)
        self.assertEqual([m["type"] for m in conn.sent], ["snapshot", "update"])
        self.assertEqual(conn.sent[1]["data"]["id"], "late")

    async def test_snapshot_failure_closes_connection(self):
        broken = HistoryStore(dataclasses.replace(self.settings, db_path=Path(self._tmpdir.name)))
        broadcaster = LiveBroadcaster(broken)
        conn = FakeConnection()

        self.assertFalse(await broadcaster.on_connect(conn))
        self.assertEqual(conn.closed_with, 1011)
        self.assertEqual(broadcaster.connection_count, 0)

    async def test_unregister_and_close_all(self):
        a, b = FakeConnection(), FakeConnection()
        await self.broadcaster.on_connect(a)
        await self.broadcaster.on_connect(b)
        await self.broadcaster.unregister(a)
        self.assertEqual(self.broadcaster.connection_count, 1)
        await self.broadcaster.close_all()
        self.assertEqual(self.broadcaster.connection_count, 0)
        self.assertEqual(b.closed_with, 1001)
        self.assertIsNone(a.closed_with)
