"""Prometheus metrics helpers."""
from __future__ import annotations

from prometheus_client import Counter, Gauge

EVENTS_TOTAL = Counter(
    "history_events_total",
    "Inbound bus messages grouped by handling outcome",
    ["outcome"],
)
BROADCAST_DELIVERIES_TOTAL = Counter(
    "history_broadcast_deliveries_total",
    "Live update messages delivered to WebSocket clients",
)
BROADCAST_FAILURES_TOTAL = Counter(
    "history_broadcast_failures_total",
    "Live update sends that failed and dropped the connection",
)
LIVE_CONNECTIONS = Gauge(
    "history_live_connections",
    "Currently registered live WebSocket connections",
)
CONSUMER_RECONNECTS_TOTAL = Counter(
    "history_consumer_reconnects_total",
    "Bus subscription reconnect attempts",
)
HTTP_REQUESTS_TOTAL = Counter(
    "history_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
