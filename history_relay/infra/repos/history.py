"""Classification history repository (SQLite, append-only).

The table is keyed by the producer's id. Inserts use `ON CONFLICT DO NOTHING`
so redelivered events never create a second row or touch the first one.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

from history_relay.config import Settings, get_settings
from history_relay.core.models import HistoryEntry
from history_relay.infra.db.sqlite import get_db, init_db
from history_relay.infra.repos._common import json_dumps, json_loads, to_sortable_iso, utcnow_iso


class HistoryStoreError(RuntimeError):
    pass


class StoreUnavailableError(HistoryStoreError):
    """The database could not be reached or rejected the statement."""


def _row_to_entry(row) -> HistoryEntry:
    d: dict[str, Any] = dict(row)
    return HistoryEntry(
        id=str(d["id"]),
        prompt=d.get("prompt"),
        result=json_loads(d.get("result_json"), None),
        source_ref=str(d.get("source_ref") or ""),
        timestamp=d["timestamp"],
    )


class HistoryStore:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def clamp_limit(self, limit: Any) -> int:
        try:
            value = int(limit)
        except (TypeError, ValueError):
            value = 0
        if value <= 0:
            value = self.settings.default_limit
        return min(value, self.settings.max_limit)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            db = await get_db(settings=self.settings)
        except (aiosqlite.Error, OSError) as exc:
            raise StoreUnavailableError(f"connect failed: {exc}") from exc
        try:
            yield db
        except (aiosqlite.Error, OSError) as exc:
            try:
                await db.rollback()
            except Exception:
                pass
            raise StoreUnavailableError(str(exc)) from exc
        finally:
            await db.close()

    async def init(self) -> dict:
        try:
            return await init_db(settings=self.settings)
        except (aiosqlite.Error, OSError) as exc:
            raise StoreUnavailableError(f"schema init failed: {exc}") from exc

    async def insert(self, entry: HistoryEntry) -> bool:
        """Store `entry` unless its id already exists. True when a row was written."""
        async with self._connect() as db:
            cur = await db.execute(
                "INSERT INTO classification_history(id, prompt, result_json, source_ref, timestamp, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO NOTHING",
                (
                    entry.id,
                    entry.prompt,
                    json_dumps(entry.result),
                    entry.source_ref,
                    to_sortable_iso(entry.timestamp),
                    utcnow_iso(),
                ),
            )
            inserted = cur.rowcount == 1
            await db.commit()
            return inserted

    async def latest(self, limit: Any = None) -> list[HistoryEntry]:
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT id, prompt, result_json, source_ref, timestamp FROM classification_history "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                (self.clamp_limit(limit),),
            )
            rows = await cur.fetchall()
            return [_row_to_entry(row) for row in rows]

    async def get(self, entry_id: str) -> HistoryEntry | None:
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT id, prompt, result_json, source_ref, timestamp FROM classification_history "
                "WHERE id = ? LIMIT 1",
                (str(entry_id),),
            )
            row = await cur.fetchone()
            return _row_to_entry(row) if row else None

    async def count(self) -> int:
        async with self._connect() as db:
            cur = await db.execute("SELECT COUNT(*) AS n FROM classification_history")
            row = await cur.fetchone()
            return int(row["n"]) if row else 0

    async def ping(self) -> bool:
        async with self._connect() as db:
            cur = await db.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
            return bool(row and int(row["ok"]) == 1)
