"""Engine: compile grammars once, run many constrained sessions.

The engine owns one model and one vocabulary. Each compiled grammar gets a
shared, read-only automaton and one TokenMasker whose transition cache is
reused by every session on that grammar.

Example:
    >>> engine = Engine(model, vocab)
    >>> handle = engine.compile_builtin("json")
    >>> session_id = engine.start(handle, SamplingConfig(seed=0, max_tokens=64))
    >>> for event in engine.run(session_id):
    ...     print(event)
    >>> engine.session(session_id).text
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from pushdown_decoding.backends.base import LanguageModel
from pushdown_decoding.core.automaton import PushdownAutomaton
from pushdown_decoding.core.mask import MaskerSettings, TokenMasker
from pushdown_decoding.core.vocab import Vocabulary
from pushdown_decoding.decoding.loop import DecodingLoop
from pushdown_decoding.decoding.session import GenerationSession, SamplingConfig
from pushdown_decoding.decoding.speculative import ModelDraftProposer
from pushdown_decoding.events.emitter import EngineStats
from pushdown_decoding.events.models import (
    EngineStatsSnapshot,
    EventKind,
    GenerationEvent,
    MetricsSnapshot,
    Token,
)
from pushdown_decoding.grammar.builtin import builtin_grammar
from pushdown_decoding.grammar.compiler import compile_grammar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrammarHandle:
    """A compiled grammar registered with an engine.

    Attributes:
        grammar_id: Fingerprint of the compiled grammar
        automaton: The shared automaton
        name: Builtin name, if compiled with ``compile_builtin``
    """

    grammar_id: str
    automaton: PushdownAutomaton
    name: str | None = None

    @property
    def start_symbol(self) -> str:
        return self.automaton.start_symbol


class Engine:
    """Grammar registry and session manager for one model.

    Args:
        model: Target language model
        vocabulary: Surface texts of the model's vocabulary
        draft_model: Optional cheaper model used for speculative drafts
        masker_settings: Cache size and worker threads for every masker
    """

    def __init__(
        self,
        model: LanguageModel,
        vocabulary: Vocabulary,
        draft_model: LanguageModel | None = None,
        masker_settings: MaskerSettings | None = None,
    ) -> None:
        if model.vocab_size != vocabulary.size:
            raise ValueError(
                f"model vocab size {model.vocab_size} != vocabulary size {vocabulary.size}"
            )
        self.model = model
        self.vocabulary = vocabulary
        self.masker_settings = masker_settings or MaskerSettings()
        self._draft = (
            ModelDraftProposer(draft_model, eos_token_id=vocabulary.eos_token_id)
            if draft_model is not None
            else None
        )
        self._lock = threading.Lock()
        self._handles: dict[tuple[str, str | None], GrammarHandle] = {}
        self._loops: dict[str, DecodingLoop] = {}
        self._sessions: dict[str, GenerationSession] = {}
        self._stats = EngineStats()

    # -- grammars --

    def compile(self, grammar_text: str, start: str | None = None, name: str | None = None) -> GrammarHandle:
        """Compile a grammar, reusing the automaton for text seen before.

        Raises:
            GrammarError: If the grammar is invalid
        """
        key = (grammar_text, start)
        with self._lock:
            handle = self._handles.get(key)
        if handle is not None:
            return handle

        automaton = compile_grammar(grammar_text, start=start)
        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                loop = self._loops.get(automaton.fingerprint)
                if loop is None:
                    masker = TokenMasker(automaton, self.vocabulary, self.masker_settings)
                    loop = DecodingLoop(self.model, masker, draft=self._draft)
                    self._loops[automaton.fingerprint] = loop
                else:
                    # same grammar written differently; share the existing masker
                    automaton = loop.masker.automaton
                handle = GrammarHandle(automaton.fingerprint, automaton, name)
                self._handles[key] = handle
                logger.info(
                    "compiled grammar %s (start=%s, %d rules)",
                    handle.grammar_id,
                    automaton.start_symbol,
                    len(automaton.grammar.rules),
                )
        return handle

    def compile_builtin(self, name: str) -> GrammarHandle:
        """Compile one of the bundled grammars (json, sql, arithmetic)."""
        return self.compile(builtin_grammar(name), name=name)

    # -- sessions --

    def start(
        self,
        handle: GrammarHandle,
        config: SamplingConfig | None = None,
        max_tokens: int | None = None,
        prompt_ids: Sequence[int] = (),
    ) -> str:
        """Create a session for a compiled grammar and return its id.

        Raises:
            pydantic.ValidationError: If ``max_tokens`` is not positive
        """
        config = config or SamplingConfig()
        if max_tokens is not None:
            # model_copy skips validation
            update = {**config.model_dump(), "max_tokens": max_tokens}
            config = SamplingConfig.model_validate(update)
        loop = self._loop_for(handle)
        session = GenerationSession(loop.masker.automaton, config, list(prompt_ids))
        with self._lock:
            self._sessions[session.session_id] = session
        self._stats.session_started()
        logger.debug("session %s created for grammar %s", session.session_id, handle.grammar_id)
        return session.session_id

    def run(self, session_id: str, deadline: float | None = None) -> Iterator[GenerationEvent]:
        """Run a session; yields its events, the terminal event last.

        Raises:
            KeyError: Unknown session id
            RuntimeError: The session already ran
        """
        session = self.session(session_id)
        loop = self._loops[session.automaton.fingerprint]
        events = loop.run(session, deadline=deadline)
        return self._track(session, events)

    def generate(self, session_id: str, deadline: float | None = None) -> Iterator[Token]:
        """Run a session, yielding committed tokens only."""
        for event in self.run(session_id, deadline=deadline):
            if event.kind == EventKind.TOKEN:
                yield Token(token_id=event.token_id, text=event.token_text, probability=event.probability)

    def stop(self, session_id: str, reason: str = "stop requested") -> None:
        """Request a stop; takes effect at the session's next step boundary."""
        self.session(session_id).stop(reason)

    def stats(self, session_id: str) -> MetricsSnapshot:
        return self.session(session_id).metrics.snapshot()

    def session(self, session_id: str) -> GenerationSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise KeyError(f"unknown session {session_id!r}") from None

    def close(self, session_id: str) -> None:
        """Forget a session, stopping it first if it is still running."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None and not session.finished:
            session.stop("session closed")

    @property
    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def engine_stats(self) -> EngineStatsSnapshot:
        """Counters across every finished session."""
        return self._stats.snapshot()

    def _loop_for(self, handle: GrammarHandle) -> DecodingLoop:
        with self._lock:
            loop = self._loops.get(handle.grammar_id)
        if loop is None:
            raise ValueError(f"grammar {handle.grammar_id} was not compiled by this engine")
        return loop

    def _track(self, session: GenerationSession, events: Iterator[GenerationEvent]) -> Iterator[GenerationEvent]:
        try:
            yield from events
        finally:
            if session.finished:
                self._stats.session_finished(session.metrics.snapshot())
