"""Translate inbound bus payloads into history entries.

`parse_event` is pure: it never raises for bad input and never touches I/O.
The caller decides what to do with a failed parse.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from history_relay.core.models import HistoryEntry

# Keys that describe the envelope rather than the classification result.
_ENVELOPE_KEYS = {"id", "prompt", "timestamp", "pdfUrl", "pdf_url", "source_ref"}


class NonFiniteNumberError(ValueError):
    pass


def _reject_constant(token: str) -> Any:
    # NaN and Infinity cannot be served back as JSON unchanged.
    raise NonFiniteNumberError(token)


def _finite_float(token: str) -> float:
    value = float(token)
    if math.isinf(value):
        raise NonFiniteNumberError(token)
    return value


@dataclass(frozen=True)
class ParseResult:
    entry: HistoryEntry | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.entry is not None


def build_source_ref(entry_id: str, *, source_base_url: str) -> str:
    return f"{(source_base_url or '').rstrip('/')}/pdf/{entry_id}"


def parse_timestamp(value: Any, *, default: datetime | None = None) -> datetime:
    """ISO-8601 strings or epoch seconds/milliseconds; anything else -> default (now)."""
    fallback = default or datetime.now(timezone.utc)
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) >= 1e12:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    raw = str(value).strip()
    if not raw:
        return fallback
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, OSError, ValueError):
        return fallback


def _normalize_id(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (str, int)):
        return str(value).strip()
    return ""


def parse_event(
    raw: bytes | str | None,
    *,
    source_base_url: str,
    received_at: datetime | None = None,
) -> ParseResult:
    if raw is None:
        return ParseResult(error="empty_payload")
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return ParseResult(error="invalid_encoding")
    try:
        payload = json.loads(raw, parse_constant=_reject_constant, parse_float=_finite_float)
    except NonFiniteNumberError:
        return ParseResult(error="non_finite_number")
    except (json.JSONDecodeError, TypeError):
        return ParseResult(error="invalid_json")
    if not isinstance(payload, dict):
        return ParseResult(error="not_an_object")

    entry_id = _normalize_id(payload.get("id"))
    if not entry_id:
        return ParseResult(error="missing_id")

    if "result" in payload:
        result = payload.get("result")
    else:
        result = {k: v for k, v in payload.items() if k not in _ENVELOPE_KEYS} or None

    prompt = payload.get("prompt")
    if prompt is not None and not isinstance(prompt, str):
        prompt = json.dumps(prompt, default=str)

    try:
        entry = HistoryEntry(
            id=entry_id,
            prompt=prompt,
            result=result,
            source_ref=build_source_ref(entry_id, source_base_url=source_base_url),
            timestamp=parse_timestamp(payload.get("timestamp"), default=received_at),
        )
    except ValidationError as exc:
        return ParseResult(error=f"invalid_entry: {exc.error_count()} error(s)")
    return ParseResult(entry=entry)
