"""The decoding loop: model -> mask -> sample -> commit, one token at a time.

Each step asks the model for a distribution, removes every token the
grammar forbids, samples from what is left and commits the sample to the
session's PDA runtime. With speculative decoding enabled, a draft batch is
verified against the automaton in one go and rolled back on failure.

Errors raised inside a session never escape the event stream: they end the
session and become its terminal event.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator, Iterator

import numpy as np

from pushdown_decoding.backends.base import LanguageModel
from pushdown_decoding.core.mask import Mask, TokenMasker
from pushdown_decoding.core.vocab import Vocabulary
from pushdown_decoding.decoding.sampling import apply_mask, sample_token, top_candidates
from pushdown_decoding.decoding.session import GenerationSession
from pushdown_decoding.decoding.speculative import DraftProposer
from pushdown_decoding.errors import DeadlockError, InvariantViolation, PushdownDecodingError
from pushdown_decoding.events.models import EventKind, GenerationEvent, SessionOutcome, Token

logger = logging.getLogger(__name__)


class DecodingLoop:
    """Drives generation for sessions sharing one model and one masker.

    Example:
        >>> loop = DecodingLoop(model, TokenMasker(automaton, vocab))
        >>> session = GenerationSession(automaton, SamplingConfig(seed=7))
        >>> for event in loop.run(session):
        ...     print(event)
        >>> session.text
        '{"name":"John"}'
    """

    def __init__(
        self,
        model: LanguageModel,
        masker: TokenMasker,
        draft: DraftProposer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.masker = masker
        self.draft = draft
        self._clock = clock

    @property
    def vocabulary(self) -> Vocabulary:
        return self.masker.vocabulary

    def generate(
        self,
        session: GenerationSession,
        max_tokens: int | None = None,
        deadline: float | None = None,
    ) -> Iterator[Token]:
        """Committed tokens only; see ``run`` for the full event stream."""
        for event in self.run(session, max_tokens=max_tokens, deadline=deadline):
            if event.kind == EventKind.TOKEN:
                yield session.output[event.step]

    def run(
        self,
        session: GenerationSession,
        max_tokens: int | None = None,
        deadline: float | None = None,
    ) -> Iterator[GenerationEvent]:
        """Generate until a stop condition; yields every event, terminal last.

        Args:
            session: A session that has not run before
            max_tokens: Override for ``session.config.max_tokens``
            deadline: Seconds after which the session stops like an explicit stop

        Raises:
            RuntimeError: If the session already ran (sessions are not restartable)
            ValueError: If the model and vocabulary sizes disagree, or
                ``max_tokens`` is not positive
        """
        if session.started:
            raise RuntimeError(f"session {session.session_id} already ran")
        if session.automaton is not self.masker.automaton:
            raise ValueError("session and masker use different automatons")
        if self.model.vocab_size != self.vocabulary.size:
            raise ValueError(
                f"model vocab size {self.model.vocab_size} != vocabulary size {self.vocabulary.size}"
            )
        if max_tokens is not None and max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {max_tokens}")
        session.started = True
        limit = max_tokens if max_tokens is not None else session.config.max_tokens
        return self._run(session, limit, deadline)

    def _run(
        self, session: GenerationSession, max_tokens: int, deadline: float | None
    ) -> Iterator[GenerationEvent]:
        config = session.config
        rng = np.random.default_rng(config.seed)
        deadline_at = None if deadline is None else self._clock() + deadline
        speculate = config.speculative and self.draft is not None
        if config.speculative and self.draft is None:
            logger.warning("speculative decoding requested but no draft proposer configured")
        strict_next = False
        outcome: SessionOutcome | None = None
        error: PushdownDecodingError | None = None

        session.metrics.start()
        logger.info(
            "session %s started (grammar %s, max_tokens=%d, speculative=%s)",
            session.session_id,
            session.automaton.fingerprint,
            max_tokens,
            speculate,
        )
        try:
            while outcome is None:
                if session.stop_requested:
                    outcome = SessionOutcome.STOPPED
                elif deadline_at is not None and self._clock() >= deadline_at:
                    session.stop("deadline exceeded")
                    outcome = SessionOutcome.DEADLINE
                elif len(session.output) >= max_tokens:
                    # a complete sentence at the cap is still a valid generation
                    if session.runtime.is_accepting:
                        outcome = SessionOutcome.ACCEPTED
                    else:
                        outcome = SessionOutcome.MAX_TOKENS
                elif speculate and config.stop_on_accept and session.runtime.is_accepting:
                    outcome = SessionOutcome.ACCEPTED
                elif speculate and not strict_next:
                    outcome, rolled_back = yield from self._speculative_step(session, max_tokens)
                    strict_next = rolled_back
                else:
                    outcome = yield from self._step(session, rng)
                    strict_next = False
        except DeadlockError as exc:
            error = DeadlockError(exc.state_label, exc.stack, session.text)
            outcome = SessionOutcome.DEADLOCK
            logger.error("session %s deadlocked: %s", session.session_id, error)
        except InvariantViolation as exc:
            error = exc
            outcome = SessionOutcome.INVARIANT_VIOLATION
            logger.error("session %s aborted: %s", session.session_id, exc)
        except GeneratorExit:
            # consumer abandoned the stream; treat as a stop
            self._finish(session, SessionOutcome.STOPPED, None)
            raise

        yield self._finish(session, outcome, error)

    def _finish(
        self,
        session: GenerationSession,
        outcome: SessionOutcome,
        error: PushdownDecodingError | None,
    ) -> GenerationEvent:
        if outcome == SessionOutcome.ACCEPTED:
            session.runtime.finish()
        session.outcome = outcome
        session.error = error
        event = self._emit(
            session,
            EventKind.TERMINAL,
            outcome=outcome,
            error=str(error) if error is not None else None,
        )
        logger.info(
            "session %s finished: %s after %d tokens",
            session.session_id,
            outcome.value,
            len(session.output),
        )
        return event

    def _step(
        self, session: GenerationSession, rng: np.random.Generator
    ) -> Generator[GenerationEvent, None, SessionOutcome | None]:
        """One strict masked step. Returns an outcome if the session should end."""
        config = session.config
        runtime = session.runtime
        vocab = self.vocabulary
        eos = vocab.eos_token_id

        mask = self._compute_mask(session)
        accepting = runtime.is_accepting
        if accepting and (config.stop_on_accept or not _can_extend(mask, eos)):
            return SessionOutcome.ACCEPTED

        probs = np.asarray(self.model.next_token_probs(session.context_ids()), dtype=np.float64)
        candidates = top_candidates(probs, max(1, config.blocked_report_k))
        session.metrics.record_step(prevented_error=not mask[candidates[0]])
        for token_id in candidates[: config.blocked_report_k]:
            if not mask[token_id]:
                yield self._emit(
                    session,
                    EventKind.BLOCKED,
                    token_id=token_id,
                    token_text=vocab.texts[token_id],
                    probability=float(probs[token_id]),
                )

        token_id = sample_token(apply_mask(probs, mask), rng, config.temperature, config.top_p)
        if token_id == eos:
            return SessionOutcome.ACCEPTED
        yield self._commit(session, token_id, float(probs[token_id]))
        return None

    def _speculative_step(
        self, session: GenerationSession, max_tokens: int
    ) -> Generator[GenerationEvent, None, tuple[SessionOutcome | None, bool]]:
        """Propose a draft batch and verify it against the automaton in one pass.

        The batch is all-or-nothing: if any draft is ungrammatical the
        runtime is restored to its snapshot and nothing is committed.

        Returns:
            ``(outcome, rolled_back)``
        """
        assert self.draft is not None
        runtime = session.runtime
        vocab = self.vocabulary
        eos = vocab.eos_token_id
        count = min(session.config.draft_length, max_tokens - len(session.output))
        drafts = self.draft.propose(session.context_ids(), count)[:count]
        session.metrics.record_draft(len(drafts))
        if not drafts:
            return None, True

        snapshot = runtime.snapshot()
        verified: list[tuple[Token, str, list[str]]] = []
        reached_eos = False
        reached_accept = False
        failed = False
        for token_id, probability in drafts:
            if token_id == eos:
                reached_eos = runtime.is_accepting
                failed = not reached_eos
                break
            text = vocab.text(token_id)
            session.metrics.record_checks(len(text))
            if not text or not runtime.feed_text(text):
                failed = True
                break
            token = Token(token_id=token_id, text=text, probability=probability)
            verified.append((token, runtime.state_label(), runtime.stack_view()))
            if session.config.stop_on_accept and runtime.is_accepting:
                reached_accept = True
                break

        if failed:
            runtime.restore(snapshot)
            session.metrics.record_draft(rejected=len(drafts))
            batch = "".join(vocab.text(token_id) for token_id, _ in drafts)
            logger.debug("draft batch %r rejected by the grammar, rolled back", batch)
            yield self._emit(session, EventKind.ROLLBACK, token_text=batch, speculative=True)
            return None, True

        session.metrics.record_step()
        for token, label, stack in verified:
            session.output.append(token)
            yield self._emit(
                session,
                EventKind.TOKEN,
                step=len(session.output) - 1,
                token_id=token.token_id,
                token_text=token.text,
                probability=token.probability,
                accepted=True,
                speculative=True,
                automaton_state_label=label,
                stack_snapshot=stack,
            )
        if reached_eos or reached_accept:
            return SessionOutcome.ACCEPTED, False
        return None, False

    def _compute_mask(self, session: GenerationSession) -> Mask:
        before = self.masker.checks
        try:
            return self.masker.compute_mask(session.runtime.configs)
        finally:
            session.metrics.record_mask(checks=self.masker.checks - before)

    def _commit(self, session: GenerationSession, token_id: int, probability: float) -> GenerationEvent:
        """Feed a sampled token to the runtime and append it to the output."""
        runtime = session.runtime
        text = self.vocabulary.text(token_id)
        label, stack = runtime.state_label(), runtime.stack_view()
        session.metrics.record_checks(len(text))
        if not runtime.feed_text(text):
            raise InvariantViolation(text, label, stack)
        session.output.append(Token(token_id=token_id, text=text, probability=probability))
        logger.debug("committed %r (p=%.3f)", text, probability)
        return self._emit(
            session,
            EventKind.TOKEN,
            step=len(session.output) - 1,
            token_id=token_id,
            token_text=text,
            probability=probability,
            accepted=True,
        )

    def _emit(self, session: GenerationSession, kind: EventKind, **fields) -> GenerationEvent:
        event = self._event(session, kind, **fields)
        session.metrics.emit(event)
        return event

    def _event(self, session: GenerationSession, kind: EventKind, **fields) -> GenerationEvent:
        fields.setdefault("step", len(session.output))
        fields.setdefault("automaton_state_label", session.runtime.state_label())
        fields.setdefault("stack_snapshot", session.runtime.stack_view())
        return GenerationEvent(
            kind=kind,
            cumulative_elapsed_ms=session.metrics.elapsed_ms(),
            **fields,
        )


def _can_extend(mask: Mask, eos: int | None) -> bool:
    """Whether any token other than EOS is allowed."""
    extra = 1 if eos is not None and mask[eos] else 0
    return mask.count - extra > 0
