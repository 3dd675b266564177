"""Formatters for the generation event stream.

Plain-text, Markdown and rich renderings of what a session did: which
tokens were committed, which likely tokens the grammar blocked, and how
the automaton's stack evolved.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from rich.markup import escape
from rich.table import Table

from pushdown_decoding.events.models import (
    EngineStatsSnapshot,
    EventKind,
    GenerationEvent,
    MetricsSnapshot,
)

logger = logging.getLogger(__name__)

# Stack entries shown per event before truncating
STACK_PREVIEW = 4


def _make_prob_bar(prob: float, width: int = 20) -> str:
    """Create an ASCII probability bar."""
    filled = int(prob * width)
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def _stack_preview(stack: Sequence[str], limit: int = STACK_PREVIEW) -> str:
    shown = " ".join(stack[:limit])
    if len(stack) > limit:
        shown += f" ... ({len(stack)})"
    return shown


def log_event(event: GenerationEvent) -> None:
    """Log one event with a probability bar; usable as an emitter listener."""
    if event.kind == EventKind.TERMINAL:
        if event.error:
            logger.info("[end] %s: %s", event.outcome.value if event.outcome else "?", event.error)
        else:
            logger.info("[end] %s", event.outcome.value if event.outcome else "?")
    elif event.kind == EventKind.ROLLBACK:
        logger.info("[%3d] rollback of draft %r", event.step, event.token_text)
    else:
        marker = "+" if event.accepted else "x"
        logger.info(
            "[%3d] %s %-12r %6.2f%% %s %s | %s",
            event.step,
            marker,
            event.token_text,
            event.probability * 100,
            _make_prob_bar(event.probability, width=10),
            event.automaton_state_label,
            _stack_preview(event.stack_snapshot),
        )


def print_events(events: Iterable[GenerationEvent]) -> None:
    """Log a whole event stream followed by the generated text."""
    text = []
    logger.info("=" * 60)
    for event in events:
        log_event(event)
        if event.kind == EventKind.TOKEN:
            text.append(event.token_text)
    logger.info("-" * 60)
    logger.info("Output: %s", "".join(text))
    logger.info("=" * 60)


def format_compact(events: Iterable[GenerationEvent]) -> str:
    """One line per event.

    Args:
        events: Events in stream order

    Returns:
        Compact string representation
    """
    return "\n".join(str(event) for event in events)


def format_markdown(events: Sequence[GenerationEvent], metrics: MetricsSnapshot | None = None) -> str:
    """Format a session as Markdown for documentation or notebooks.

    Args:
        events: Events in stream order
        metrics: Optional session metrics for a summary section

    Returns:
        Markdown-formatted string
    """
    output = "".join(e.token_text for e in events if e.kind == EventKind.TOKEN)
    lines = [
        "## Constrained Generation",
        "",
        f"**Output:** `{output}`",
        "",
        "### Events",
        "",
        "| Step | Kind | Token | Prob | State | Stack |",
        "|------|------|-------|------|-------|-------|",
    ]
    for event in events:
        if event.kind == EventKind.TERMINAL:
            continue
        lines.append(
            f"| {event.step} | {event.kind.value} | `{event.token_text}` | "
            f"{event.probability:.1%} | {event.automaton_state_label} | "
            f"`{_stack_preview(event.stack_snapshot)}` |"
        )

    terminal = next((e for e in reversed(events) if e.kind == EventKind.TERMINAL), None)
    if terminal is not None and terminal.outcome is not None:
        lines.extend(["", f"**Outcome:** {terminal.outcome.value}"])
        if terminal.error:
            lines.append(f"**Error:** {terminal.error}")

    if metrics is not None:
        lines.extend(
            [
                "",
                "### Summary",
                "",
                f"- **Tokens accepted:** {metrics.tokens_accepted}",
                f"- **Tokens blocked:** {metrics.tokens_blocked}",
                f"- **Prevented errors:** {metrics.prevented_errors}",
                f"- **Grammar checks:** {metrics.grammar_checks}",
                f"- **Tokens/sec:** {metrics.tokens_per_sec:.1f}",
            ]
        )
    return "\n".join(lines)


def events_table(events: Iterable[GenerationEvent], title: str = "Generation events") -> Table:
    """Rich table of token, blocked and rollback events."""
    table = Table(title=title)
    table.add_column("Step", justify="right", style="dim")
    table.add_column("Token", justify="left")
    table.add_column("Prob", justify="right", style="yellow")
    table.add_column("State", justify="center", style="cyan")
    table.add_column("Stack (top first)", justify="left", style="magenta")

    styles = {EventKind.TOKEN: "green", EventKind.BLOCKED: "red", EventKind.ROLLBACK: "yellow"}
    for event in events:
        if event.kind == EventKind.TERMINAL:
            continue
        style = styles[event.kind]
        token = repr(event.token_text)
        if event.speculative:
            token += " (draft)"
        table.add_row(
            str(event.step),
            f"[{style}]{escape(token)}[/]",
            f"{event.probability:.1%}",
            event.automaton_state_label,
            escape(_stack_preview(event.stack_snapshot)),
        )
    return table


def metrics_table(metrics: MetricsSnapshot, title: str = "Session metrics") -> Table:
    """Rich two-column table of session counters."""
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    rows = [
        ("Outcome", metrics.outcome.value if metrics.outcome else "running"),
        ("Tokens accepted", str(metrics.tokens_accepted)),
        ("Tokens blocked", str(metrics.tokens_blocked)),
        ("Prevented errors", str(metrics.prevented_errors)),
        ("Grammar checks", str(metrics.grammar_checks)),
        ("Masks computed", str(metrics.masks_computed)),
        ("Constraint hit rate", f"{metrics.constraint_hit_rate:.1%}"),
        ("Tokens/sec", f"{metrics.tokens_per_sec:.1f}"),
        ("Avg step latency", f"{metrics.avg_step_latency_ms:.2f} ms"),
    ]
    if metrics.draft_tokens_proposed:
        rows.extend(
            [
                ("Draft tokens proposed", str(metrics.draft_tokens_proposed)),
                ("Draft tokens accepted", str(metrics.draft_tokens_accepted)),
                ("Draft tokens rejected", str(metrics.draft_tokens_rejected)),
                ("Rollbacks", str(metrics.rollbacks)),
            ]
        )
    for name, value in rows:
        table.add_row(name, value)
    return table


def engine_stats_table(stats: EngineStatsSnapshot) -> Table:
    """Rich table of engine-wide counters."""
    table = Table(title="Engine stats")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Sessions", str(stats.sessions_started))
    table.add_row("Valid generations", str(stats.valid_generations))
    table.add_row("Failed generations", str(stats.failed_generations))
    table.add_row("Stopped generations", str(stats.stopped_generations))
    table.add_row("Prevented errors", str(stats.prevented_errors))
    table.add_row("Avg tokens/sec", f"{stats.avg_tokens_per_sec:.1f}")
    return table
