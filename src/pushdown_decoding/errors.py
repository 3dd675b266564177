"""Error taxonomy for grammar compilation and constrained generation.

Compile-time problems surface as GrammarError. Everything that goes wrong
inside a generation session (DeadlockError, InvariantViolation) ends the
session and is delivered as the terminal event of its event stream.
StoppedByCaller is a normal termination and is never raised out of the loop.
"""

from __future__ import annotations

from enum import Enum


class PushdownDecodingError(Exception):
    """Base class for all engine errors."""


class GrammarErrorKind(str, Enum):
    """Why a grammar failed to compile."""

    SYNTAX = "syntax"
    UNDEFINED_SYMBOL = "undefined_symbol"
    UNPRODUCTIVE_START = "unproductive_start"
    LEFT_RECURSION = "left_recursion"


class GrammarError(PushdownDecodingError):
    """Grammar text could not be turned into an automaton.

    Attributes:
        kind: The error category
        line: 1-based line of the offending text, if known
        column: 1-based column of the offending text, if known
        symbol: The nonterminal involved, if any
    """

    def __init__(
        self,
        kind: GrammarErrorKind,
        message: str,
        line: int | None = None,
        column: int | None = None,
        symbol: str | None = None,
    ) -> None:
        self.kind = kind
        self.line = line
        self.column = column
        self.symbol = symbol
        location = f" at {line}:{column}" if line is not None else ""
        super().__init__(f"{kind.value}{location}: {message}")


class DeadlockError(PushdownDecodingError):
    """No vocabulary token can extend the output.

    Carries the last valid automaton state so the failure can be diagnosed.
    """

    def __init__(self, state_label: str, stack: list[str], output: str = "") -> None:
        self.state_label = state_label
        self.stack = stack
        self.output = output
        top = stack[0] if stack else "$"
        super().__init__(
            f"no valid continuation in state {state_label} (stack top {top!r}, "
            f"depth {len(stack)}) after {output[-40:]!r}"
        )


class InvariantViolation(PushdownDecodingError):
    """The runtime rejected a token that the mask marked valid."""

    def __init__(self, token_text: str, state_label: str, stack: list[str]) -> None:
        self.token_text = token_text
        self.state_label = state_label
        self.stack = stack
        super().__init__(
            f"mask allowed {token_text!r} but the automaton rejected it "
            f"in state {state_label}"
        )


class StoppedByCaller(PushdownDecodingError):
    """Generation was stopped by an explicit request or a deadline."""

    def __init__(self, reason: str = "stop requested") -> None:
        self.reason = reason
        super().__init__(reason)
