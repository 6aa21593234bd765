"""Accessors for the per-application objects stored on `app.state`."""

from __future__ import annotations

from fastapi import Request

from history_relay.infra.repos.history import HistoryStore


def get_store(request: Request) -> HistoryStore:
    return request.app.state.store
