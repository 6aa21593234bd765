"""Bus consumer: parse, persist, then push live updates.

State machine:
    DISCONNECTED -> SUBSCRIBING -> CONSUMING -> RECONNECTING -> SUBSCRIBING ...
Transport failures are retried forever with a fixed delay (no backoff, no
circuit breaker). STOPPED is only reached through `stop()`.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum

from loguru import logger

from history_relay.core.usecases.events import parse_event
from history_relay.infra.bus.kafka import Subscription, SubscriptionFactory
from history_relay.infra.events.broadcaster import LiveBroadcaster
from history_relay.infra.repos.history import HistoryStore, HistoryStoreError
from history_relay.observability.metrics import CONSUMER_RECONNECTS_TOTAL, EVENTS_TOTAL


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    CONSUMING = "consuming"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class HandleOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    STORE_FAILED = "store_failed"


class SubscriptionClosedError(ConnectionError):
    pass


class EventConsumer:
    def __init__(
        self,
        *,
        store: HistoryStore,
        broadcaster: LiveBroadcaster,
        subscription_factory: SubscriptionFactory,
        source_base_url: str,
        reconnect_delay_sec: float = 5.0,
        enabled: bool = True,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.subscription_factory = subscription_factory
        self.source_base_url = source_base_url
        self.reconnect_delay_sec = max(0.0, float(reconnect_delay_sec))
        self.enabled = enabled
        self._state = ConsumerState.DISCONNECTED
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.started_at: float | None = None
        self.reconnects = 0
        self.outcomes: dict[str, int] = {o.value: 0 for o in HandleOutcome}

    @property
    def state(self) -> ConsumerState:
        return self._state

    def _set_state(self, state: ConsumerState) -> None:
        if state != self._state:
            logger.info("consumer state {} -> {}", self._state.value, state.value)
            self._state = state

    async def handle_message(self, raw: bytes | str | None) -> HandleOutcome:
        try:
            parsed = parse_event(raw, source_base_url=self.source_base_url)
        except Exception as exc:
            # Counted as malformed; the run loop still commits the offset.
            return self._record(HandleOutcome.MALFORMED, detail=f"unparseable event: {exc!r}")
        if not parsed.ok:
            return self._record(HandleOutcome.MALFORMED, detail=parsed.error)

        entry = parsed.entry
        try:
            inserted = await self.store.insert(entry)
        except HistoryStoreError as exc:
            return self._record(HandleOutcome.STORE_FAILED, detail=f"id={entry.id} {exc}")
        if not inserted:
            return self._record(HandleOutcome.DUPLICATE, detail=f"id={entry.id}")

        await self.broadcaster.broadcast(entry)
        return self._record(HandleOutcome.STORED, detail=f"id={entry.id}")

    def _record(self, outcome: HandleOutcome, *, detail: str | None = None) -> HandleOutcome:
        self.outcomes[outcome.value] += 1
        EVENTS_TOTAL.labels(outcome=outcome.value).inc()
        if outcome is HandleOutcome.MALFORMED:
            logger.warning("dropping malformed event: {}", detail)
        elif outcome is HandleOutcome.STORE_FAILED:
            logger.error("history insert failed; broadcast skipped: {}", detail)
        elif outcome is HandleOutcome.DUPLICATE:
            logger.debug("duplicate event ignored: {}", detail)
        else:
            logger.debug("event stored: {}", detail)
        return outcome

    async def _consume_once(self) -> None:
        self._set_state(ConsumerState.SUBSCRIBING)
        subscription: Subscription = self.subscription_factory()
        try:
            await subscription.start()
            self._set_state(ConsumerState.CONSUMING)
            async for raw in subscription.messages():
                await self.handle_message(raw)
                await subscription.commit()
                if self._stop_event.is_set():
                    return
        finally:
            try:
                await subscription.stop()
            except Exception as exc:
                logger.debug("subscription stop failed: {}", exc)
        if not self._stop_event.is_set():
            raise SubscriptionClosedError("subscription stream ended")

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._consume_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                self._set_state(ConsumerState.RECONNECTING)
                self.reconnects += 1
                CONSUMER_RECONNECTS_TOTAL.inc()
                logger.warning(
                    "bus subscription failed ({}); reconnecting in {}s",
                    exc,
                    self.reconnect_delay_sec,
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay_sec)
                except asyncio.TimeoutError:
                    continue
        self._set_state(ConsumerState.STOPPED)

    async def start(self) -> None:
        if self._task is not None:
            return
        if not self.enabled:
            logger.warning("MESSAGE_BROKER_URL empty; bus consumer disabled")
            return
        self.started_at = time.time()
        self._stop_event.clear()
        self._state = ConsumerState.DISCONNECTED
        self._task = asyncio.create_task(self.run(), name="history-event-consumer")

    async def stop(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.error("consumer task ended with error: {}", exc)
        self._state = ConsumerState.STOPPED

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "state": self._state.value,
            "started_at": self.started_at,
            "reconnects": self.reconnects,
            "outcomes": dict(self.outcomes),
        }
