"""Command-line interface for grammar-constrained decoding.

Usage:
    # Check a string against a grammar (builtin name or grammar file)
    pushdown-decoding check json '{"name": "John"}'

    # Show the compiled rules and transition table size
    pushdown-decoding compile grammars/expr.ebnf --describe

    # Constrained generation with a local MLX model
    pushdown-decoding generate json "Return a user as JSON:" --seed 0
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pushdown_decoding.backends.mlx_backend import list_available_models
from pushdown_decoding.core.runtime import PDARuntime, RuntimeStatus
from pushdown_decoding.decoding.session import SamplingConfig
from pushdown_decoding.errors import GrammarError
from pushdown_decoding.grammar.builtin import BUILTIN_GRAMMARS
from pushdown_decoding.grammar.compiler import compile_grammar

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "mlx-community/Qwen2.5-1.5B-Instruct-4bit"


def load_grammar_text(grammar: str) -> str:
    """Resolve GRAMMAR to grammar text: a builtin name or a file path.

    Raises:
        FileNotFoundError: If it is neither
    """
    if grammar in BUILTIN_GRAMMARS:
        return BUILTIN_GRAMMARS[grammar]
    path = Path(grammar)
    if path.is_file():
        return path.read_text(encoding="utf-8")
    raise FileNotFoundError(
        f"{grammar!r} is not a builtin grammar ({', '.join(sorted(BUILTIN_GRAMMARS))}) or a file"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pushdown-decoding",
        description="Grammar-constrained decoding with pushdown automata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s check json '{"a": [1, 2]}'
  %(prog)s compile arithmetic --describe
  %(prog)s generate json "Describe a user as JSON:" --max-tokens 64 --seed 0
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Check whether text is accepted by a grammar")
    check.add_argument("grammar", help="Builtin grammar name or path to a grammar file")
    check.add_argument("text", help="Text to check")
    check.add_argument("--start", help="Start symbol (default: first rule)")

    comp = sub.add_parser("compile", help="Compile a grammar and summarize the automaton")
    comp.add_argument("grammar", help="Builtin grammar name or path to a grammar file")
    comp.add_argument("--start", help="Start symbol (default: first rule)")
    comp.add_argument(
        "--describe", action="store_true", help="Dump the full transition table"
    )

    gen = sub.add_parser(
        "generate",
        help="Generate grammar-constrained text with an MLX model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Suggested models:\n  " + "\n  ".join(list_available_models()),
    )
    gen.add_argument("grammar", help="Builtin grammar name or path to a grammar file")
    gen.add_argument("prompt", help="Prompt for the model")
    gen.add_argument("--start", help="Start symbol (default: first rule)")
    gen.add_argument("--model", default=DEFAULT_MODEL, help=f"Model to use (default: {DEFAULT_MODEL})")
    gen.add_argument("--draft-model", help="Smaller model for speculative drafts")
    gen.add_argument("--config", type=Path, help="SamplingConfig JSON file")
    gen.add_argument("--temperature", type=float, help="Sampling temperature (default: 0.7)")
    gen.add_argument("--top-p", type=float, help="Nucleus sampling mass (default: 0.9)")
    gen.add_argument("--max-tokens", type=int, help="Maximum tokens to generate (default: 100)")
    gen.add_argument("--seed", type=int, help="Random seed for reproducible sampling")
    gen.add_argument("--speculative", action="store_true", help="Enable speculative decoding")
    gen.add_argument("--draft-length", type=int, help="Tokens per draft batch (default: 4)")
    gen.add_argument(
        "--stop-on-accept",
        action="store_true",
        help="Stop as soon as the output is a complete sentence of the grammar",
    )
    gen.add_argument("--workers", type=int, default=1, help="Threads for mask computation")
    gen.add_argument("--deadline", type=float, help="Stop after this many seconds")
    output = gen.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Stream events as JSON lines")
    output.add_argument("--markdown", action="store_true", help="Print a Markdown report")
    return parser


def cmd_check(args: argparse.Namespace, console: Console) -> int:
    automaton = compile_grammar(load_grammar_text(args.grammar), start=args.start)
    runtime = PDARuntime(automaton)
    for index, char in enumerate(args.text):
        if not runtime.feed(char):
            console.print(f"[red]rejected[/] at character {index} ({escape(repr(char))})")
            return 1
    if runtime.finish() == RuntimeStatus.ACCEPTED:
        console.print("[green]accepted[/]")
        return 0
    console.print(
        f"[yellow]valid prefix[/] (state {runtime.state_label()}, "
        f"stack {escape(str(runtime.stack_view()))})"
    )
    return 1


def cmd_compile(args: argparse.Namespace, console: Console) -> int:
    automaton = compile_grammar(load_grammar_text(args.grammar), start=args.start)
    table = Table(title=f"Grammar {automaton.fingerprint} (start: {automaton.start_symbol})")
    table.add_column("Nonterminal", style="cyan")
    table.add_column("Alternative", style="green")
    for rule in automaton.grammar.rules:
        body = " ".join(str(symbol) for symbol in rule.body) or "ε"
        table.add_row(escape(rule.lhs), escape(body))
    console.print(table)
    console.print(
        f"{len(automaton.grammar.nonterminals)} nonterminals, "
        f"{len(automaton.grammar.terminals)} terminals, "
        f"{len(automaton.transitions)} transitions"
    )
    if args.describe:
        console.print(automaton.describe(), markup=False, emoji=False, highlight=False)
    return 0


def _sampling_config(args: argparse.Namespace) -> SamplingConfig:
    base = SamplingConfig.from_json_file(args.config) if args.config else SamplingConfig()
    overrides = {
        "temperature": args.temperature,
        "top_p": args.top_p,
        "max_tokens": args.max_tokens,
        "seed": args.seed,
        "draft_length": args.draft_length,
    }
    update = {key: value for key, value in overrides.items() if value is not None}
    if args.speculative:
        update["speculative"] = True
    if args.stop_on_accept:
        update["stop_on_accept"] = True
    # re-validate so CLI values get the same checks as the JSON file
    return SamplingConfig.model_validate({**base.model_dump(), **update})


def cmd_generate(args: argparse.Namespace, console: Console) -> int:
    from pushdown_decoding.backends.mlx_backend import MLXLanguageModel
    from pushdown_decoding.core.mask import MaskerSettings
    from pushdown_decoding.engine import Engine
    from pushdown_decoding.events.formatters import (
        events_table,
        format_markdown,
        log_event,
        metrics_table,
    )
    from pushdown_decoding.events.models import EventKind

    config = _sampling_config(args)
    masker_settings = MaskerSettings(workers=args.workers)
    grammar_text = load_grammar_text(args.grammar)

    logger.info("Loading model: %s", args.model)
    logger.info("(First run may download the model)")
    try:
        model = MLXLanguageModel.from_pretrained(args.model)
        draft = MLXLanguageModel.from_pretrained(args.draft_model) if args.draft_model else None
    except ImportError as e:
        logger.error("Error: %s", e)
        return 1

    engine = Engine(
        model,
        model.vocabulary(),
        draft_model=draft,
        masker_settings=masker_settings,
    )
    handle = engine.compile(grammar_text, start=args.start)
    session_id = engine.start(handle, config, prompt_ids=model.encode(args.prompt))

    events = []
    for event in engine.run(session_id, deadline=args.deadline):
        events.append(event)
        if args.json:
            print(event.to_json())
        elif not args.markdown:
            log_event(event)

    session = engine.session(session_id)
    metrics = engine.stats(session_id)
    if args.markdown:
        print(format_markdown(events, metrics))
    elif not args.json:
        console.print(events_table(e for e in events if e.kind != EventKind.TOKEN or e.speculative))
        console.print(metrics_table(metrics))
        console.print(f"[bold]Output:[/] {escape(session.text)}")
    return 1 if session.outcome is not None and session.outcome.is_error else 0


COMMANDS = {
    "check": cmd_check,
    "compile": cmd_compile,
    "generate": cmd_generate,
}


def main(argv: list[str] | None = None) -> int:
    """Run the CLI; returns the process exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )
    console = Console()
    try:
        return COMMANDS[args.command](args, console)
    except GrammarError as e:
        logger.error("Grammar error: %s", e)
        return 2
    except FileNotFoundError as e:
        logger.error("Error: %s", e)
        return 2
    except ValidationError as e:
        logger.error("Invalid sampling config: %s", e)
        return 2
    except ValueError as e:
        logger.error("Invalid argument: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
