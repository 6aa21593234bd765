"""History relay configuration.

Values come from the process environment, optionally seeded from a dotenv file
(`CONFIG` points at it; otherwise `<base_dir>/.env`).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return int(default)


def _as_float(value: str | None, default: float) -> float:
    try:
        return float(str(value).strip())
    except Exception:
        return float(default)


def _as_csv(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    parts = tuple(p.strip() for p in str(value or "").split(",") if p.strip())
    return parts or default


def resolve_sqlite_path(database_url: str, *, base_dir: Path) -> Path:
    """Map a `sqlite:///` connection string (or bare path) to a file path.

    `sqlite:///data/x.db` is relative to `base_dir`, `sqlite:////srv/x.db` is
    absolute. Other schemes are rejected.
    """
    raw = (database_url or "").strip()
    if not raw:
        raise ValueError("DATABASE_URL is empty")
    if "://" in raw:
        scheme, _, rest = raw.partition("://")
        if scheme.lower() not in {"sqlite", "sqlite+aiosqlite"}:
            raise ValueError(f"unsupported database scheme: {scheme}")
        # sqlite:///relative -> "/relative", sqlite:////abs -> "//abs"
        raw = rest[1:] if rest.startswith("/") else rest
        if not raw:
            raise ValueError("DATABASE_URL has no path")
    path = Path(raw)
    if not path.is_absolute():
        path = base_dir / path
    return path


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    database_url: str
    db_path: Path
    sqlite_busy_timeout_ms: int

    # Bus
    message_broker_url: str
    kafka_topics: tuple[str, ...]
    kafka_group_id: str
    kafka_from_beginning: bool
    consumer_reconnect_delay_sec: float

    # Entries
    source_base_url: str
    snapshot_limit: int
    default_limit: int
    max_limit: int

    # Server
    server_host: str
    server_port: int
    ws_ping_sec: float
    cors_allow_origins: tuple[str, ...]

    # Logging
    log_level: str
    log_json: bool

    @property
    def consumer_enabled(self) -> bool:
        return bool(self.message_broker_url)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    base_dir = Path(__file__).resolve().parents[1]
    dotenv_path = (os.getenv("CONFIG") or "").strip() or base_dir / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    database_url = (os.getenv("DATABASE_URL") or "").strip() or "sqlite:///.runtime/data/history.db"
    max_limit = max(1, _as_int(os.getenv("HISTORY_MAX_LIMIT"), 500))

    return Settings(
        base_dir=base_dir,
        database_url=database_url,
        db_path=resolve_sqlite_path(database_url, base_dir=base_dir),
        sqlite_busy_timeout_ms=_as_int(os.getenv("SQLITE_BUSY_TIMEOUT_MS"), 5000),
        message_broker_url=os.getenv("MESSAGE_BROKER_URL", "localhost:9092").strip(),
        kafka_topics=_as_csv(os.getenv("KAFKA_TOPICS"), ("classification-result",)),
        kafka_group_id=(os.getenv("KAFKA_GROUP_ID") or "history-service").strip(),
        kafka_from_beginning=_as_bool(os.getenv("KAFKA_FROM_BEGINNING"), False),
        consumer_reconnect_delay_sec=max(0.0, _as_float(os.getenv("CONSUMER_RECONNECT_DELAY_SEC"), 5.0)),
        source_base_url=(os.getenv("PDF_INGEST_URL") or "http://localhost:8081").strip().rstrip("/"),
        snapshot_limit=max(1, min(_as_int(os.getenv("HISTORY_SNAPSHOT_LIMIT"), 50), max_limit)),
        default_limit=50,
        max_limit=max_limit,
        server_host=(os.getenv("SERVER_HOST") or "0.0.0.0").strip(),
        server_port=_as_int(os.getenv("SERVER_PORT"), 8090),
        ws_ping_sec=max(1.0, _as_float(os.getenv("WS_PING_SEC"), 30.0)),
        cors_allow_origins=_as_csv(os.getenv("CORS_ALLOW_ORIGINS"), ("*",)),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        log_json=_as_bool(os.getenv("LOG_JSON"), False),
    )
