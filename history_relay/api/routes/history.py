"""History read routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from history_relay.api.deps import get_store
from history_relay.infra.repos.history import HistoryStore


router = APIRouter(tags=["history"])


@router.get("/history")
async def api_list_history(limit: int | None = None, store: HistoryStore = Depends(get_store)):
    entries = await store.latest(limit)
    return [e.to_wire() for e in entries]


@router.get("/classifications")
async def api_list_classifications(limit: int | None = None, store: HistoryStore = Depends(get_store)):
    return await api_list_history(limit=limit, store=store)


@router.get("/history/{entry_id}")
async def api_get_history_entry(entry_id: str, store: HistoryStore = Depends(get_store)):
    entry = await store.get(entry_id)
    if not entry:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "History entry not found", "details": {"id": entry_id}},
        )
    return entry.to_wire()
