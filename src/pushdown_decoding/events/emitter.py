"""Session metrics and event fan-out.

MetricsEmitter observes a session's events and keeps counters. It never
touches generation state, and every update is a handful of integer
increments under a lock, so it cannot stall the decoding loop.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from pushdown_decoding.events.models import (
    EngineStatsSnapshot,
    EventKind,
    GenerationEvent,
    MetricsSnapshot,
    SessionOutcome,
)

logger = logging.getLogger(__name__)

EventListener = Callable[[GenerationEvent], None]


class MetricsEmitter:
    """Counts what happens in one generation session.

    Example:
        >>> emitter = MetricsEmitter()
        >>> unsubscribe = emitter.subscribe(print)
        >>> emitter.emit(GenerationEvent(kind=EventKind.TOKEN, token_text="{", accepted=True))
        >>> emitter.snapshot().tokens_accepted
        1
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: list[EventListener] = []
        self._started_at: float | None = None
        self._last_at: float | None = None
        self._outcome: SessionOutcome | None = None
        self._counts = dict.fromkeys(
            (
                "tokens_accepted",
                "tokens_blocked",
                "grammar_checks",
                "masks_computed",
                "prevented_errors",
                "draft_tokens_proposed",
                "draft_tokens_accepted",
                "draft_tokens_rejected",
                "rollbacks",
                "steps",
            ),
            0,
        )

    def start(self) -> None:
        """Mark the session start; elapsed time is measured from here."""
        with self._lock:
            self._started_at = self._clock()
            self._last_at = self._started_at

    def elapsed_ms(self) -> float:
        if self._started_at is None:
            return 0.0
        return (self._clock() - self._started_at) * 1000.0

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: GenerationEvent) -> None:
        """Count an event and forward it to listeners."""
        with self._lock:
            self._touch()
            if event.kind == EventKind.TOKEN:
                self._counts["tokens_accepted"] += 1
                if event.speculative:
                    self._counts["draft_tokens_accepted"] += 1
            elif event.kind == EventKind.BLOCKED:
                self._counts["tokens_blocked"] += 1
            elif event.kind == EventKind.ROLLBACK:
                self._counts["rollbacks"] += 1
            elif event.kind == EventKind.TERMINAL:
                self._outcome = event.outcome
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # a broken consumer must not take the session down with it
                logger.exception("event listener %r failed, detaching it", listener)
                with self._lock:
                    if listener in self._listeners:
                        self._listeners.remove(listener)

    def record_step(self, prevented_error: bool = False) -> None:
        with self._lock:
            self._touch()
            self._counts["steps"] += 1
            if prevented_error:
                self._counts["prevented_errors"] += 1

    def record_mask(self, checks: int = 0) -> None:
        with self._lock:
            self._counts["masks_computed"] += 1
            self._counts["grammar_checks"] += checks

    def record_checks(self, checks: int) -> None:
        with self._lock:
            self._counts["grammar_checks"] += checks

    def record_draft(self, proposed: int = 0, rejected: int = 0) -> None:
        with self._lock:
            self._counts["draft_tokens_proposed"] += proposed
            self._counts["draft_tokens_rejected"] += rejected

    def snapshot(self) -> MetricsSnapshot:
        """Consistent read-only copy of the counters."""
        with self._lock:
            elapsed = 0.0
            if self._started_at is not None and self._last_at is not None:
                elapsed = (self._last_at - self._started_at) * 1000.0
            return MetricsSnapshot(**self._counts, elapsed_ms=elapsed, outcome=self._outcome)

    def _touch(self) -> None:
        now = self._clock()
        if self._started_at is None:
            self._started_at = now
        self._last_at = now


class EngineStats:
    """Aggregates finished sessions into engine-wide counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions_started = 0
        self._valid = 0
        self._failed = 0
        self._stopped = 0
        self._prevented = 0
        self._tokens = 0
        self._elapsed_ms = 0.0

    def session_started(self) -> None:
        with self._lock:
            self._sessions_started += 1

    def session_finished(self, metrics: MetricsSnapshot) -> None:
        with self._lock:
            if metrics.outcome == SessionOutcome.ACCEPTED:
                self._valid += 1
            elif metrics.outcome is not None and metrics.outcome.is_error:
                self._failed += 1
            else:
                self._stopped += 1
            self._prevented += metrics.prevented_errors
            self._tokens += metrics.tokens_accepted
            self._elapsed_ms += metrics.elapsed_ms

    def snapshot(self) -> EngineStatsSnapshot:
        with self._lock:
            return EngineStatsSnapshot(
                sessions_started=self._sessions_started,
                valid_generations=self._valid,
                failed_generations=self._failed,
                stopped_generations=self._stopped,
                prevented_errors=self._prevented,
                tokens_generated=self._tokens,
                total_elapsed_ms=self._elapsed_ms,
            )
