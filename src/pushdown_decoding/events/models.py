"""Pydantic models for the generation event stream and metrics.

These models are the consumption contract for presentation layers: each
event carries what a dashboard renders (token, verdict, automaton state,
stack contents, elapsed time) and serializes to JSON for export.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class EventKind(str, Enum):
    """What a GenerationEvent reports."""

    TOKEN = "token"  # a token was committed
    BLOCKED = "blocked"  # a likely token was removed by the mask
    ROLLBACK = "rollback"  # a speculative draft batch failed and was undone
    TERMINAL = "terminal"  # the session ended; always the last event


class SessionOutcome(str, Enum):
    """How a session ended."""

    ACCEPTED = "accepted"
    MAX_TOKENS = "max_tokens"
    STOPPED = "stopped"
    DEADLINE = "deadline"
    DEADLOCK = "deadlock"
    INVARIANT_VIOLATION = "invariant_violation"

    @property
    def is_error(self) -> bool:
        return self in (SessionOutcome.DEADLOCK, SessionOutcome.INVARIANT_VIOLATION)


class GenerationEvent(BaseModel):
    """One entry of a session's event stream.

    Attributes:
        kind: Event type
        step: Decoding step the event belongs to (0-indexed)
        token_text: Surface text of the token ("" for terminal events)
        token_id: Vocabulary id, if the event is about a token
        probability: Probability the model assigned to the token
        accepted: Whether the token was committed
        automaton_state_label: Control state after the event (q1, q2, ...)
        stack_snapshot: Stack contents after the event, top first
        cumulative_elapsed_ms: Milliseconds since the session started
        speculative: Token came from a draft batch
        outcome: Terminal events only, how the session ended
        error: Terminal events only, error message for failed sessions

    Example:
        >>> print(event)
        [3] '"John"' accepted (41.2%) q1 stack=['ws__rep1', '"}"', '$']
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind = Field(description="Event type")
    step: int = Field(default=0, description="Decoding step (0-indexed)")
    token_text: str = Field(default="", description="Token surface text")
    token_id: int | None = Field(default=None, description="Token ID in vocabulary")
    probability: float = Field(default=0.0, description="Model probability of the token")
    accepted: bool = Field(default=False, description="Token was committed")
    automaton_state_label: str = Field(default="", description="Automaton control state")
    stack_snapshot: list[str] = Field(default_factory=list, description="Stack, top first")
    cumulative_elapsed_ms: float = Field(default=0.0, description="Elapsed milliseconds")
    speculative: bool = Field(default=False, description="Token came from a draft batch")
    outcome: SessionOutcome | None = Field(default=None, description="Terminal outcome")
    error: str | None = Field(default=None, description="Error message")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stack_depth(self) -> int:
        """Stack depth including the bottom marker."""
        return len(self.stack_snapshot)

    def __str__(self) -> str:
        """Human-readable single line."""
        if self.kind == EventKind.TERMINAL:
            detail = f": {self.error}" if self.error else ""
            return f"[{self.step}] END {self.outcome.value if self.outcome else '?'}{detail}"
        if self.kind == EventKind.ROLLBACK:
            return f"[{self.step}] ROLLBACK draft {self.token_text!r}"
        verdict = "accepted" if self.accepted else "BLOCKED"
        return (
            f"[{self.step}] {self.token_text!r} {verdict} ({self.probability * 100:.1f}%) "
            f"{self.automaton_state_label} stack={self.stack_snapshot[:4]}"
        )

    def to_json(self, indent: int | None = None) -> str:
        return self.model_dump_json(indent=indent)


class Token(BaseModel):
    """A committed token.

    Attributes:
        token_id: Vocabulary id
        text: Surface text
        probability: Probability the model assigned before masking
    """

    model_config = ConfigDict(frozen=True)

    token_id: int = Field(description="Token ID in vocabulary")
    text: str = Field(description="Surface text")
    probability: float = Field(default=0.0, description="Model probability")

    def __str__(self) -> str:
        return f"'{self.text}' ({self.probability * 100:.1f}%)"


class MetricsSnapshot(BaseModel):
    """Read-only view of one session's counters.

    Attributes:
        tokens_accepted: Tokens committed to the output
        tokens_blocked: Likely candidates removed by the mask
        grammar_checks: Character steps simulated by the automaton
        masks_computed: Masks computed
        prevented_errors: Steps where the unconstrained top choice was invalid
        draft_tokens_proposed: Speculative tokens proposed
        draft_tokens_accepted: Speculative tokens committed
        draft_tokens_rejected: Speculative tokens discarded by rollbacks
        rollbacks: Speculative batches rolled back
        steps: Decoding steps taken
        elapsed_ms: Time between the first and last event
    """

    model_config = ConfigDict(frozen=True)

    tokens_accepted: int = 0
    tokens_blocked: int = 0
    grammar_checks: int = 0
    masks_computed: int = 0
    prevented_errors: int = 0
    draft_tokens_proposed: int = 0
    draft_tokens_accepted: int = 0
    draft_tokens_rejected: int = 0
    rollbacks: int = 0
    steps: int = 0
    elapsed_ms: float = 0.0
    outcome: SessionOutcome | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def tokens_per_sec(self) -> float:
        """Committed tokens per second of wall time."""
        if self.elapsed_ms <= 0:
            return 0.0
        return self.tokens_accepted / (self.elapsed_ms / 1000.0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def avg_step_latency_ms(self) -> float:
        """Average wall time per decoding step."""
        if self.steps == 0:
            return 0.0
        return self.elapsed_ms / self.steps

    @computed_field  # type: ignore[prop-decorator]
    @property
    def constraint_hit_rate(self) -> float:
        """Fraction of steps where the model's own top choice was grammatical."""
        if self.steps == 0:
            return 1.0
        return 1.0 - self.prevented_errors / self.steps

    def __str__(self) -> str:
        return (
            f"accepted={self.tokens_accepted} blocked={self.tokens_blocked} "
            f"checks={self.grammar_checks} masks={self.masks_computed} "
            f"{self.tokens_per_sec:.1f} tok/s"
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    def save_json(self, path: str | Path, indent: int | None = 2) -> None:
        """Save to JSON file."""
        Path(path).write_text(self.model_dump_json(indent=indent))


class EngineStatsSnapshot(BaseModel):
    """Counters across every session an engine has run."""

    model_config = ConfigDict(frozen=True)

    sessions_started: int = 0
    valid_generations: int = 0
    failed_generations: int = 0
    stopped_generations: int = 0
    prevented_errors: int = 0
    tokens_generated: int = 0
    total_elapsed_ms: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def avg_tokens_per_sec(self) -> float:
        if self.total_elapsed_ms <= 0:
            return 0.0
        return self.tokens_generated / (self.total_elapsed_ms / 1000.0)
