"""FastAPI entrypoint for the history relay.

`create_app()` owns the process-wide objects (store, broadcaster, consumer)
and hands them to routes through `app.state`.
"""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from history_relay import __version__
from history_relay.api.routes.history import router as history_router
from history_relay.api.ws.history import stream_history
from history_relay.config import Settings, get_settings
from history_relay.infra.bus.kafka import SubscriptionFactory, kafka_subscription_factory
from history_relay.infra.events.broadcaster import LiveBroadcaster
from history_relay.infra.repos.history import HistoryStore, HistoryStoreError
from history_relay.observability.metrics import HTTP_REQUESTS_TOTAL
from history_relay.worker.consumer import EventConsumer

CORRELATION_HEADER = "X-Correlation-ID"

# Set per HTTP request so error envelopes can echo it back.
_request_correlation: ContextVar[str] = ContextVar("history_relay_correlation_id", default="")


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    return {
        "code": code,
        "message": message,
        "details": {**(details or {}), "correlation_id": _request_correlation.get()},
    }


def create_app(
    settings: Settings | None = None,
    *,
    store: HistoryStore | None = None,
    subscription_factory: SubscriptionFactory | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or HistoryStore(settings)
    broadcaster = LiveBroadcaster(store, snapshot_limit=settings.snapshot_limit)
    consumer = EventConsumer(
        store=store,
        broadcaster=broadcaster,
        subscription_factory=subscription_factory or kafka_subscription_factory(settings),
        source_base_url=settings.source_base_url,
        reconnect_delay_sec=settings.consumer_reconnect_delay_sec,
        enabled=settings.consumer_enabled,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            info = await store.init()
        except HistoryStoreError as exc:
            raise RuntimeError(f"History database initialization failed ({settings.db_path}).") from exc
        logger.info("history store ready at {} (applied={})", info["db_path"], info["applied"])
        await consumer.start()
        yield
        await consumer.stop()
        await broadcaster.close_all()

    app = FastAPI(
        title="History Relay",
        description="Classification history relay: bus consumer, read API and live stream",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.consumer = consumer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(history_router)

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        incoming = (request.headers.get(CORRELATION_HEADER) or "").strip() or str(uuid.uuid4())
        token = _request_correlation.set(incoming)
        status_code = 500
        try:
            with logger.contextualize(correlation_id=incoming):
                response = await call_next(request)
            status_code = int(getattr(response, "status_code", 500))
            response.headers[CORRELATION_HEADER] = incoming
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or "unmatched"
            HTTP_REQUESTS_TOTAL.labels(request.method, path, str(status_code)).inc()
            _request_correlation.reset(token)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            code = detail.get("code", "http_error")
            message = detail.get("message", "Request failed.")
            details = detail.get("details", {})
            if not isinstance(details, dict):
                details = {"detail": details}
        else:
            code = "http_error"
            message = str(detail)
            details = {}
        return JSONResponse(status_code=exc.status_code, content=_error_body(code, message, details), headers=exc.headers)

    @app.exception_handler(HistoryStoreError)
    async def store_exception_handler(_request: Request, exc: HistoryStoreError):
        logger.error("history store unavailable: {}", exc)
        return JSONResponse(
            status_code=503,
            content=_error_body("store_unavailable", "History store is unavailable."),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception):
        logger.exception("unhandled error: {}", exc)
        return JSONResponse(status_code=500, content=_error_body("internal_error", "Internal server error."))

    @app.get("/health")
    async def health():
        try:
            db_ok = await store.ping()
            db_error = None
        except HistoryStoreError as exc:
            db_ok = False
            db_error = str(exc)
        body = {
            "status": "ok" if db_ok else "degraded",
            "service": "history-relay",
            "version": __version__,
            "timestamp": int(time.time()),
            "database": {"ok": db_ok, **({"error": db_error} if db_error else {})},
            "consumer": consumer.status(),
            "live_connections": broadcaster.connection_count,
        }
        return JSONResponse(status_code=200 if db_ok else 503, content=body)

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.websocket("/ws")
    async def ws_history(websocket: WebSocket):
        await stream_history(websocket, broadcaster, ping_sec=settings.ws_ping_sec)

    @app.websocket("/")
    async def ws_history_root(websocket: WebSocket):
        await stream_history(websocket, broadcaster, ping_sec=settings.ws_ping_sec)

    return app
