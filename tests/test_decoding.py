"""Tests for the constrained decoding loop."""

import numpy as np
import pytest

from pushdown_decoding.core.mask import Mask, TokenMasker
from pushdown_decoding.core.runtime import RuntimeStatus, accepts, initial_configs, step_text
from pushdown_decoding.core.vocab import Vocabulary
from pushdown_decoding.decoding.loop import DecodingLoop
from pushdown_decoding.decoding.session import GenerationSession, SamplingConfig
from pushdown_decoding.errors import DeadlockError, InvariantViolation
from pushdown_decoding.events.models import EventKind, SessionOutcome

from conftest import EOS, JSON_TOKENS, RandomModel, ScriptedModel, ids

# near-greedy sampling so scripted models are followed exactly
GREEDY = {"temperature": 0.1, "top_p": 0.5, "seed": 0}


class RankedModel:
    """Model with a fixed preference order at every output position."""

    WEIGHTS = (0.5, 0.3, 0.15)

    def __init__(self, vocab_size: int, rankings: list[list[int]]) -> None:
        self._vocab_size = vocab_size
        self.rankings = rankings

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    def next_token_probs(self, context):
        ranking = self.rankings[min(len(context), len(self.rankings) - 1)]
        probs = np.full(self._vocab_size, 0.05 / (self._vocab_size - len(ranking)))
        for token_id, weight in zip(ranking, self.WEIGHTS):
            probs[token_id] = weight
        return probs


class LyingMasker(TokenMasker):
    """Masker that allows every token, to exercise the commit-time check."""

    def compute_mask(self, configs):
        return Mask(np.ones(self.vocabulary.size, dtype=np.bool_))


def run_session(loop, automaton, **config):
    session = GenerationSession(automaton, SamplingConfig(**config))
    events = list(loop.run(session))
    return session, events


class TestGeneration:
    """End-to-end generation over the JSON grammar."""

    def test_follows_valid_script(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session, events = run_session(loop, json_automaton, **GREEDY)
        assert session.text == '{"name":"John","age":30}'
        assert session.outcome == SessionOutcome.ACCEPTED
        assert session.runtime.status == RuntimeStatus.ACCEPTED
        assert accepts(json_automaton, session.text)

    def test_event_stream_shape(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session, events = run_session(loop, json_automaton, **GREEDY)
        tokens = [e for e in events if e.kind == EventKind.TOKEN]
        assert [e.step for e in tokens] == list(range(9))
        assert all(e.accepted for e in tokens)
        assert events[-1].kind == EventKind.TERMINAL
        assert events[-1].outcome == SessionOutcome.ACCEPTED
        assert sum(e.kind == EventKind.TERMINAL for e in events) == 1
        # after the closing brace only the bottom marker is left
        assert tokens[-1].stack_snapshot == ["$"]
        assert tokens[-1].automaton_state_label == "q2"

    def test_accepts_without_sampling_when_only_eos_remains(
        self, json_masker, json_automaton, person_model
    ):
        loop = DecodingLoop(person_model, json_masker)
        run_session(loop, json_automaton, **GREEDY)
        assert person_model.calls == 9

    def test_metrics(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session, events = run_session(loop, json_automaton, **GREEDY)
        metrics = session.metrics.snapshot()
        assert metrics.tokens_accepted == 9
        assert metrics.prevented_errors == 0
        assert metrics.tokens_blocked == sum(e.kind == EventKind.BLOCKED for e in events)
        assert metrics.steps == 9
        assert metrics.masks_computed == 10
        assert metrics.grammar_checks > 0
        assert metrics.outcome == SessionOutcome.ACCEPTED

    def test_generate_yields_tokens(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        texts = [token.text for token in loop.generate(session)]
        assert "".join(texts) == '{"name":"John","age":30}'

    def test_prompt_is_context(self, json_masker, json_automaton, json_vocab, person_script):
        model = ScriptedModel(
            json_vocab.size, person_script, fallback=json_vocab.eos_token_id, prompt_len=3
        )
        loop = DecodingLoop(model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY), prompt_ids=[7, 7, 7])
        list(loop.run(session))
        assert session.text == '{"name":"John","age":30}'
        assert session.context_ids()[:3] == [7, 7, 7]


class TestSoundness:
    """Whatever the model wants, the output stays inside the grammar."""

    @pytest.fixture
    def wide_vocab(self):
        return Vocabulary.from_tokens(JSON_TOKENS + ["[", "]", " ", "true", "-1"], eos=EOS)

    @pytest.mark.parametrize("seed", range(8))
    def test_random_model_never_leaves_grammar(self, json_automaton, wide_vocab, seed):
        masker = TokenMasker(json_automaton, wide_vocab)
        loop = DecodingLoop(RandomModel(wide_vocab.size, seed), masker)
        session = GenerationSession(json_automaton, SamplingConfig(seed=seed, max_tokens=25))
        for event in loop.run(session):
            if event.kind == EventKind.TOKEN:
                prefix = "".join(t.text for t in session.output[: event.step + 1])
                assert step_text(json_automaton, initial_configs(json_automaton), prefix)
        assert session.outcome in (SessionOutcome.ACCEPTED, SessionOutcome.MAX_TOKENS)
        if session.outcome == SessionOutcome.ACCEPTED:
            assert accepts(json_automaton, session.text)

    def test_same_seed_same_output(self, json_automaton, wide_vocab):
        masker = TokenMasker(json_automaton, wide_vocab)
        loop = DecodingLoop(RandomModel(wide_vocab.size, 5), masker)
        first, _ = run_session(loop, json_automaton, seed=11, max_tokens=20)
        second, _ = run_session(loop, json_automaton, seed=11, max_tokens=20)
        assert first.text == second.text
        assert [t.token_id for t in first.output] == [t.token_id for t in second.output]


class TestBlockedTokens:
    """Tests for blocked events and prevented errors."""

    def test_top_choice_blocked(self, json_masker, json_automaton, json_vocab):
        """The model prefers '}' first; the mask removes it and '{' is sampled."""
        close, open_, name = ids(json_vocab, "}", "{", '"name"')
        model = RankedModel(json_vocab.size, [[close, open_, name]])
        loop = DecodingLoop(model, json_masker)
        session, events = run_session(
            loop, json_automaton, max_tokens=1, blocked_report_k=1, **GREEDY
        )
        blocked = [e for e in events if e.kind == EventKind.BLOCKED]
        assert len(blocked) == 1
        assert blocked[0].token_text == "}"
        assert blocked[0].accepted is False
        assert blocked[0].probability == pytest.approx(0.5)
        assert session.text == "{"
        assert session.outcome == SessionOutcome.MAX_TOKENS
        metrics = session.metrics.snapshot()
        assert metrics.prevented_errors == 1
        assert metrics.constraint_hit_rate == 0.0

    def test_only_invalid_candidates_reported(self, json_masker, json_automaton, json_vocab):
        first, second, third = ids(json_vocab, "{", "}", ":")
        model = RankedModel(json_vocab.size, [[first, second, third]])
        loop = DecodingLoop(model, json_masker)
        session, events = run_session(loop, json_automaton, max_tokens=1, **GREEDY)
        blocked = [e.token_text for e in events if e.kind == EventKind.BLOCKED]
        assert blocked == ["}", ":"]
        assert session.metrics.snapshot().prevented_errors == 0

    def test_reporting_disabled(self, json_masker, json_automaton, json_vocab):
        model = RankedModel(json_vocab.size, [ids(json_vocab, "}", "{", ":")])
        loop = DecodingLoop(model, json_masker)
        session, events = run_session(
            loop, json_automaton, max_tokens=1, blocked_report_k=0, **GREEDY
        )
        assert not [e for e in events if e.kind == EventKind.BLOCKED]
        # prevented errors are still counted
        assert session.metrics.snapshot().prevented_errors == 1


class TestStopping:
    """Tests for every way a session can end."""

    def test_max_tokens(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session, events = run_session(loop, json_automaton, max_tokens=3, **GREEDY)
        assert session.text == '{"name":'
        assert session.outcome == SessionOutcome.MAX_TOKENS
        assert session.runtime.is_valid_prefix

    def test_max_tokens_override(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        list(loop.run(session, max_tokens=2))
        assert len(session.output) == 2

    @pytest.mark.parametrize("max_tokens", [0, -5])
    def test_non_positive_override_rejected(
        self, json_masker, json_automaton, person_model, max_tokens
    ):
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        with pytest.raises(ValueError, match="max_tokens"):
            loop.run(session, max_tokens=max_tokens)
        assert not session.started

    def test_stop_from_listener(self, json_masker, json_automaton, person_model):
        """A stop requested mid-stream takes effect at the next step boundary."""
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        session.metrics.subscribe(
            lambda event: session.stop("enough") if event.kind == EventKind.TOKEN else None
        )
        events = list(loop.run(session))
        assert len(session.output) == 1
        assert session.outcome == SessionOutcome.STOPPED
        assert session.stop_reason.reason == "enough"
        assert events[-1].outcome == SessionOutcome.STOPPED

    def test_deadline(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        events = list(loop.run(session, deadline=0))
        assert session.output == []
        assert session.outcome == SessionOutcome.DEADLINE
        assert session.stop_reason.reason == "deadline exceeded"
        assert [e.kind for e in events] == [EventKind.TERMINAL]

    def test_deadline_with_fake_clock(self, json_masker, json_automaton, person_model):
        ticks = iter(range(100))
        loop = DecodingLoop(person_model, json_masker, clock=lambda: float(next(ticks)))
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        list(loop.run(session, deadline=3.5))
        # clock reads 0 at start, then 1, 2, 3 pass and 4 trips the deadline
        assert len(session.output) == 3
        assert session.outcome == SessionOutcome.DEADLINE

    def test_stop_on_accept(self, json_masker, json_automaton, json_vocab):
        """'30' is already a complete document; without stop_on_accept it keeps growing."""
        thirty = json_vocab.id_for("30")
        model = ScriptedModel(json_vocab.size, [thirty] * 5)
        loop = DecodingLoop(model, json_masker)
        session, _ = run_session(loop, json_automaton, stop_on_accept=True, **GREEDY)
        assert session.text == "30"
        assert session.outcome == SessionOutcome.ACCEPTED

        session, _ = run_session(loop, json_automaton, max_tokens=3, **GREEDY)
        assert session.text == "303030"
        assert session.outcome == SessionOutcome.ACCEPTED

    def test_cap_on_complete_output_is_accepted(self, json_masker, json_automaton, person_model):
        """Hitting max_tokens right after the closing brace still finishes the runtime."""
        loop = DecodingLoop(person_model, json_masker)
        session, events = run_session(loop, json_automaton, max_tokens=9, **GREEDY)
        assert session.text == '{"name":"John","age":30}'
        assert session.outcome == SessionOutcome.ACCEPTED
        assert session.runtime.status == RuntimeStatus.ACCEPTED
        assert events[-1].outcome == SessionOutcome.ACCEPTED

    def test_abandoned_stream_counts_as_stopped(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session = GenerationSession(json_automaton, SamplingConfig(**GREEDY))
        stream = loop.run(session)
        next(stream)
        stream.close()
        assert session.outcome == SessionOutcome.STOPPED

    def test_sessions_are_not_restartable(self, json_masker, json_automaton, person_model):
        loop = DecodingLoop(person_model, json_masker)
        session, _ = run_session(loop, json_automaton, **GREEDY)
        with pytest.raises(RuntimeError, match="already ran"):
            loop.run(session)

    def test_vocab_size_mismatch(self, json_masker, json_automaton):
        loop = DecodingLoop(ScriptedModel(3, []), json_masker)
        with pytest.raises(ValueError, match="vocab size"):
            loop.run(GenerationSession(json_automaton))

    def test_foreign_automaton(self, json_masker, person_model):
        from pushdown_decoding.grammar.compiler import compile_grammar

        loop = DecodingLoop(person_model, json_masker)
        with pytest.raises(ValueError, match="different automatons"):
            loop.run(GenerationSession(compile_grammar('a ::= "{"')))


class TestFailures:
    """In-session errors become the terminal event."""

    def test_deadlock(self, json_automaton):
        vocab = Vocabulary.from_tokens(["}"], eos=EOS)
        loop = DecodingLoop(ScriptedModel(vocab.size, []), TokenMasker(json_automaton, vocab))
        session, events = run_session(loop, json_automaton, **GREEDY)
        assert session.outcome == SessionOutcome.DEADLOCK
        assert isinstance(session.error, DeadlockError)
        assert session.error.state_label == "q1"
        assert events[-1].kind == EventKind.TERMINAL
        assert "no valid continuation" in events[-1].error

    def test_deadlock_reports_output_so_far(self, json_automaton):
        vocab = Vocabulary.from_tokens(["{", '"k"'], eos=EOS)
        script = ids(vocab, "{", '"k"')
        loop = DecodingLoop(ScriptedModel(vocab.size, script), TokenMasker(json_automaton, vocab))
        session, _ = run_session(loop, json_automaton, **GREEDY)
        assert session.outcome == SessionOutcome.DEADLOCK
        assert session.text == '{"k"'
        assert session.error.output == '{"k"'

    def test_invariant_violation(self, json_automaton, json_vocab):
        close = json_vocab.id_for("}")
        masker = LyingMasker(json_automaton, json_vocab)
        loop = DecodingLoop(ScriptedModel(json_vocab.size, [close]), masker)
        session, events = run_session(loop, json_automaton, **GREEDY)
        assert session.outcome == SessionOutcome.INVARIANT_VIOLATION
        assert isinstance(session.error, InvariantViolation)
        assert session.error.token_text == "}"
        assert session.output == []
        assert session.outcome.is_error
