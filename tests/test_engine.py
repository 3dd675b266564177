"""Tests for the Engine facade."""

import pytest
from pydantic import ValidationError

from pushdown_decoding.core.mask import MaskerSettings
from pushdown_decoding.decoding.session import SamplingConfig
from pushdown_decoding.engine import Engine
from pushdown_decoding.errors import GrammarError
from pushdown_decoding.events.models import EventKind, SessionOutcome
from pushdown_decoding.grammar.builtin import JSON_GRAMMAR

from conftest import ScriptedModel

GREEDY = SamplingConfig(temperature=0.1, top_p=0.5, seed=0)


@pytest.fixture
def engine(person_model, json_vocab):
    return Engine(person_model, json_vocab)


class TestGrammars:
    """Tests for compiling and sharing grammars."""

    def test_compile_builtin(self, engine):
        handle = engine.compile_builtin("json")
        assert handle.name == "json"
        assert handle.start_symbol == "root"
        assert len(handle.grammar_id) == 16

    def test_same_text_same_handle(self, engine):
        assert engine.compile(JSON_GRAMMAR) is engine.compile(JSON_GRAMMAR)

    def test_equivalent_text_shares_automaton(self, engine):
        """Formatting differences compile to the same fingerprint and masker."""
        first = engine.compile('a ::= "x" b\nb ::= "y"')
        second = engine.compile('a ::= "x"  b   # same rules\nb ::= "y"')
        assert first is not second
        assert first.grammar_id == second.grammar_id
        assert first.automaton is second.automaton

    def test_invalid_grammar(self, engine):
        with pytest.raises(GrammarError):
            engine.compile('a ::= missing')

    def test_foreign_handle(self, engine, person_model, json_vocab):
        other = Engine(person_model, json_vocab)
        handle = other.compile('a ::= "{"')
        with pytest.raises(ValueError, match="not compiled by this engine"):
            engine.start(handle)

    def test_vocab_size_mismatch(self, json_vocab):
        with pytest.raises(ValueError, match="vocab size"):
            Engine(ScriptedModel(2, []), json_vocab)


class TestSessions:
    """Tests for session lifecycle through the engine."""

    def test_run_session(self, engine):
        handle = engine.compile_builtin("json")
        session_id = engine.start(handle, GREEDY)
        events = list(engine.run(session_id))
        assert events[-1].outcome == SessionOutcome.ACCEPTED
        assert engine.session(session_id).text == '{"name":"John","age":30}'
        assert engine.stats(session_id).tokens_accepted == 9

    def test_generate_tokens(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY)
        assert "".join(t.text for t in engine.generate(session_id)) == '{"name":"John","age":30}'

    def test_max_tokens_argument(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY, max_tokens=2)
        list(engine.run(session_id))
        assert engine.session(session_id).config.max_tokens == 2
        assert engine.session(session_id).outcome == SessionOutcome.MAX_TOKENS

    @pytest.mark.parametrize("max_tokens", [0, -5])
    def test_invalid_max_tokens_argument(self, engine, max_tokens):
        with pytest.raises(ValidationError):
            engine.start(engine.compile_builtin("json"), GREEDY, max_tokens=max_tokens)
        assert engine.sessions == []

    def test_capped_complete_output_counts_as_valid(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY, max_tokens=9)
        list(engine.run(session_id))
        assert engine.session(session_id).outcome == SessionOutcome.ACCEPTED
        stats = engine.engine_stats()
        assert stats.valid_generations == 1
        assert stats.stopped_generations == 0

    def test_sessions_are_independent(self, engine):
        handle = engine.compile_builtin("json")
        first = engine.start(handle, GREEDY)
        second = engine.start(handle, GREEDY, max_tokens=1)
        list(engine.run(second))
        list(engine.run(first))
        assert engine.session(first).text == '{"name":"John","age":30}'
        assert engine.session(second).text == "{"
        assert engine.session(first).runtime is not engine.session(second).runtime

    def test_stop(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY)
        events = engine.run(session_id)
        first = next(e for e in events if e.kind == EventKind.TOKEN)
        engine.stop(session_id, "user cancelled")
        rest = list(events)
        assert first.token_text == "{"
        assert rest[-1].outcome == SessionOutcome.STOPPED
        assert engine.session(session_id).stop_reason.reason == "user cancelled"

    def test_run_twice(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY)
        list(engine.run(session_id))
        with pytest.raises(RuntimeError):
            engine.run(session_id)

    def test_unknown_session(self, engine):
        with pytest.raises(KeyError, match="unknown session"):
            engine.run("nope")

    def test_close(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY)
        assert session_id in engine.sessions
        session = engine.session(session_id)
        engine.close(session_id)
        assert session_id not in engine.sessions
        assert session.stop_requested

    def test_engine_stats(self, engine):
        handle = engine.compile_builtin("json")
        done = engine.start(handle, GREEDY)
        capped = engine.start(handle, GREEDY, max_tokens=3)
        engine.start(handle, GREEDY)
        list(engine.run(done))
        list(engine.run(capped))
        stats = engine.engine_stats()
        assert stats.sessions_started == 3
        assert stats.valid_generations == 1
        assert stats.stopped_generations == 1
        assert stats.failed_generations == 0
        assert stats.tokens_generated == 12

    def test_abandoned_run_is_counted(self, engine):
        session_id = engine.start(engine.compile_builtin("json"), GREEDY)
        events = engine.run(session_id)
        next(events)
        events.close()
        assert engine.session(session_id).outcome == SessionOutcome.STOPPED
        assert engine.engine_stats().stopped_generations == 1

    def test_speculative_with_draft_model(self, person_model, json_vocab, person_script):
        draft = ScriptedModel(json_vocab.size, person_script, fallback=json_vocab.eos_token_id)
        engine = Engine(
            person_model, json_vocab, draft_model=draft, masker_settings=MaskerSettings(workers=2)
        )
        config = GREEDY.model_copy(update={"speculative": True})
        session_id = engine.start(engine.compile_builtin("json"), config)
        list(engine.run(session_id))
        metrics = engine.stats(session_id)
        assert engine.session(session_id).text == '{"name":"John","age":30}'
        assert metrics.draft_tokens_accepted == 9
