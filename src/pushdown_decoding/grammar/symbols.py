"""Grammar symbols and rules.

Terminals are character-level: a Literal matches a fixed run of one or more
characters, a CharClass matches exactly one character. Everything here is
frozen so compiled grammars can be shared between sessions and threads.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class NonTerminal:
    """Reference to a grammar rule by name."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Literal:
    """A fixed string terminal such as ``"{"`` or ``"true"``.

    Multi-character literals are consumed one character at a time; the
    runtime tracks how far into the literal it is (the sub-terminal cursor).
    """

    text: str

    def __post_init__(self) -> None:
        if not self.text:
            raise ValueError("Literal text must not be empty")

    def matches(self, offset: int, char: str) -> bool:
        """Check if ``char`` is the literal's character at ``offset``."""
        return self.text[offset] == char

    def __len__(self) -> int:
        return len(self.text)

    def __str__(self) -> str:
        return json.dumps(self.text, ensure_ascii=False)


@dataclass(frozen=True)
class CharClass:
    """A single-character terminal drawn from a set of ranges.

    Attributes:
        ranges: Inclusive ``(low, high)`` character pairs
        negated: Match any character NOT in the ranges
    """

    ranges: tuple[tuple[str, str], ...]
    negated: bool = False

    def contains(self, char: str) -> bool:
        """Check if a single character belongs to the class."""
        inside = any(low <= char <= high for low, high in self.ranges)
        return inside != self.negated

    def matches(self, offset: int, char: str) -> bool:
        return self.contains(char)

    def __len__(self) -> int:
        return 1

    def __str__(self) -> str:
        parts = []
        for low, high in self.ranges:
            if low == high:
                parts.append(_escape_class_char(low))
            else:
                parts.append(f"{_escape_class_char(low)}-{_escape_class_char(high)}")
        return "[" + ("^" if self.negated else "") + "".join(parts) + "]"


def _escape_class_char(char: str) -> str:
    escapes = {"\n": "\\n", "\t": "\\t", "\r": "\\r", "]": "\\]", "\\": "\\\\", "-": "\\-", "^": "\\^"}
    if char in escapes:
        return escapes[char]
    if not char.isprintable():
        return f"\\u{ord(char):04x}"
    return char


Terminal = Union[Literal, CharClass]
Symbol = Union[NonTerminal, Literal, CharClass]


def is_terminal(symbol: object) -> bool:
    """Check if a stack or rule symbol is a terminal."""
    return isinstance(symbol, (Literal, CharClass))


@dataclass(frozen=True)
class Rule:
    """A production ``lhs ::= body``. An empty body is an epsilon rule."""

    lhs: str
    body: tuple[Symbol, ...] = ()

    @property
    def is_epsilon(self) -> bool:
        return not self.body

    def referenced(self) -> list[str]:
        """Names of the nonterminals used in the body, in order."""
        return [s.name for s in self.body if isinstance(s, NonTerminal)]

    def __str__(self) -> str:
        body = " ".join(str(s) for s in self.body) if self.body else "ε"
        return f"{self.lhs} ::= {body}"


@dataclass(frozen=True)
class Grammar:
    """An ordered set of rules with a distinguished start symbol.

    Example:
        >>> g = Grammar("pair", (Rule("pair", (Literal("a"), NonTerminal("tail"))),
        ...                      Rule("tail", ())))
        >>> sorted(g.nonterminals)
        ['pair', 'tail']
    """

    start: str
    rules: tuple[Rule, ...]
    _index: dict[str, tuple[Rule, ...]] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        index: dict[str, list[Rule]] = {}
        for rule in self.rules:
            index.setdefault(rule.lhs, []).append(rule)
        object.__setattr__(
            self, "_index", {name: tuple(rules) for name, rules in index.items()}
        )

    @property
    def nonterminals(self) -> frozenset[str]:
        """Names of all nonterminals that have at least one rule."""
        return frozenset(self._index)

    @property
    def terminals(self) -> frozenset[Terminal]:
        """All terminal symbols used in rule bodies."""
        return frozenset(s for rule in self.rules for s in rule.body if is_terminal(s))

    def rules_for(self, name: str) -> tuple[Rule, ...]:
        """All alternatives of a nonterminal, in declaration order."""
        return self._index.get(name, ())

    def __str__(self) -> str:
        return "\n".join(str(rule) for rule in self.rules)
