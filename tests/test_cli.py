"""Tests for the command-line interface."""

import json
import logging

import pytest

from pushdown_decoding.cli import _sampling_config, build_parser, load_grammar_text, main
from pushdown_decoding.grammar.builtin import JSON_GRAMMAR


@pytest.fixture
def expr_grammar(tmp_path):
    path = tmp_path / "expr.ebnf"
    path.write_text('expr ::= expr "+" num | num\nnum ::= [0-9]+\n', encoding="utf-8")
    return path


class TestGrammarLoading:
    """Tests for resolving the GRAMMAR argument."""

    def test_builtin_name(self):
        assert load_grammar_text("json") == JSON_GRAMMAR

    def test_file(self, expr_grammar):
        assert "expr ::=" in load_grammar_text(str(expr_grammar))

    def test_missing(self):
        with pytest.raises(FileNotFoundError, match="not a builtin grammar"):
            load_grammar_text("no/such/grammar.ebnf")


class TestCheckCommand:
    """Tests for ``check``."""

    def test_accepted(self, capsys):
        assert main(["check", "json", '{"name": "John", "age": 30}']) == 0
        assert "accepted" in capsys.readouterr().out

    def test_valid_prefix(self, capsys):
        assert main(["check", "json", '{"name": ']) == 1
        assert "valid prefix" in capsys.readouterr().out

    def test_rejected(self, capsys):
        assert main(["check", "json", '{"a" 1}']) == 1
        assert "rejected at character 5" in capsys.readouterr().out

    def test_grammar_file_and_start(self, expr_grammar):
        assert main(["check", str(expr_grammar), "1+22+3"]) == 0
        assert main(["check", str(expr_grammar), "42", "--start", "num"]) == 0

    def test_unknown_grammar(self, caplog):
        with caplog.at_level(logging.ERROR):
            assert main(["check", "yaml", "a: 1"]) == 2
        assert "not a builtin grammar" in caplog.text

    def test_grammar_error(self, tmp_path, caplog):
        bad = tmp_path / "bad.ebnf"
        bad.write_text('a ::= "x" @\n', encoding="utf-8")
        with caplog.at_level(logging.ERROR):
            assert main(["check", str(bad), "x"]) == 2
        assert "Grammar error" in caplog.text


class TestCompileCommand:
    """Tests for ``compile``."""

    def test_summary(self, capsys):
        assert main(["compile", "arithmetic"]) == 0
        out = capsys.readouterr().out
        assert "expr__tail" in out
        assert "transitions" in out

    def test_describe(self, capsys):
        assert main(["compile", "json", "--describe"]) == 0
        out = capsys.readouterr().out
        assert "(q0, ε, $) -> (q1, root $)" in out


class TestGenerateOptions:
    """Tests for ``generate`` option handling (no model is loaded)."""

    def test_overrides(self):
        args = build_parser().parse_args(
            ["generate", "json", "hi", "--temperature", "0.2", "--speculative", "--seed", "3"]
        )
        config = _sampling_config(args)
        assert config.temperature == 0.2
        assert config.speculative is True
        assert config.seed == 3
        assert config.top_p == 0.9

    def test_config_file_with_override(self, tmp_path):
        path = tmp_path / "sampling.json"
        path.write_text(json.dumps({"max_tokens": 12, "top_p": 0.5}))
        args = build_parser().parse_args(
            ["generate", "json", "hi", "--config", str(path), "--max-tokens", "30"]
        )
        config = _sampling_config(args)
        assert config.max_tokens == 30
        assert config.top_p == 0.5

    def test_invalid_value_exits_with_usage_error(self, caplog):
        with caplog.at_level(logging.ERROR):
            assert main(["generate", "json", "hi", "--top-p", "2"]) == 2
        assert "Invalid sampling config" in caplog.text

    def test_invalid_workers_exits_with_usage_error(self, caplog):
        with caplog.at_level(logging.ERROR):
            assert main(["generate", "json", "hi", "--workers", "0"]) == 2
        assert "workers must be >= 1" in caplog.text

    def test_help_lists_suggested_models(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["generate", "--help"])
        out = capsys.readouterr().out
        assert "Suggested models:" in out
        assert "mlx-community/Llama-3.2-1B-4bit" in out

    def test_output_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["generate", "json", "hi", "--json", "--markdown"])
