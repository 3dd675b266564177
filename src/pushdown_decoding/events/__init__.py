"""Generation events, session metrics and their formatters."""

from pushdown_decoding.events.emitter import EngineStats, MetricsEmitter
from pushdown_decoding.events.formatters import (
    engine_stats_table,
    events_table,
    format_compact,
    format_markdown,
    log_event,
    metrics_table,
    print_events,
)
from pushdown_decoding.events.models import (
    EngineStatsSnapshot,
    EventKind,
    GenerationEvent,
    MetricsSnapshot,
    SessionOutcome,
    Token,
)

__all__ = [
    "EventKind",
    "GenerationEvent",
    "SessionOutcome",
    "Token",
    "MetricsSnapshot",
    "EngineStatsSnapshot",
    "MetricsEmitter",
    "EngineStats",
    "log_event",
    "print_events",
    "format_compact",
    "format_markdown",
    "events_table",
    "metrics_table",
    "engine_stats_table",
]
