"""Generation sessions and their configuration."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from pushdown_decoding.core.automaton import PushdownAutomaton
from pushdown_decoding.core.runtime import PDARuntime
from pushdown_decoding.errors import PushdownDecodingError, StoppedByCaller
from pushdown_decoding.events.emitter import MetricsEmitter
from pushdown_decoding.events.models import SessionOutcome, Token


class SamplingConfig(BaseModel):
    """Sampling and stopping options for one session.

    Attributes:
        temperature: Softmax temperature, > 0
        top_p: Nucleus mass in (0, 1]
        max_tokens: Maximum committed tokens, > 0
        speculative: Draft several tokens ahead and verify them in one batch
        seed: Seed for the sampling RNG; None draws fresh entropy
        draft_length: Tokens per speculative batch
        stop_on_accept: End as soon as the output is a complete sentence
        blocked_report_k: How many top raw candidates to check for blocked events
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    temperature: float = Field(default=0.7, gt=0)
    top_p: float = Field(default=0.9, gt=0, le=1)
    max_tokens: int = Field(default=100, gt=0)
    speculative: bool = False
    seed: int | None = None
    draft_length: int = Field(default=4, ge=1)
    stop_on_accept: bool = False
    blocked_report_k: int = Field(default=3, ge=0)

    @classmethod
    def from_json_file(cls, path: str | Path) -> SamplingConfig:
        """Load and validate a config from a JSON file."""
        return cls.model_validate_json(Path(path).read_text())


@dataclass
class GenerationSession:
    """State of one constrained generation.

    The decoding loop is the only writer. Callers may request a stop from
    any thread; it takes effect at the next step boundary and leaves the
    output and metrics intact.

    Attributes:
        automaton: Shared, read-only automaton for the session's grammar
        config: Sampling configuration
        prompt_ids: Prompt token ids passed to the model before the output
        session_id: Unique id
        runtime: The session's PDA runtime
        output: Committed tokens in order
        metrics: Counters for this session
        outcome: How the session ended, None while it is running
        error: The in-session error that ended it, if any
    """

    automaton: PushdownAutomaton
    config: SamplingConfig = field(default_factory=SamplingConfig)
    prompt_ids: list[int] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    runtime: PDARuntime = field(init=False)
    output: list[Token] = field(default_factory=list)
    metrics: MetricsEmitter = field(default_factory=MetricsEmitter)
    outcome: SessionOutcome | None = None
    error: PushdownDecodingError | None = None
    started: bool = False
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _stop_reason: StoppedByCaller | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.runtime = PDARuntime(self.automaton)

    @property
    def text(self) -> str:
        """Concatenated output text."""
        return "".join(token.text for token in self.output)

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def stop_reason(self) -> StoppedByCaller | None:
        return self._stop_reason

    def stop(self, reason: str = "stop requested") -> None:
        """Ask the loop to stop at the next step boundary."""
        if not self._stop.is_set():
            self._stop_reason = StoppedByCaller(reason)
            self._stop.set()

    def context_ids(self) -> list[int]:
        """Token ids the model conditions on: prompt plus output."""
        return self.prompt_ids + [token.token_id for token in self.output]
