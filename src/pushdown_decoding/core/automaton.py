"""Pushdown automaton produced by the grammar compiler.

The automaton is the textbook CFG-to-PDA translation with three control
states:

    q0 --ε, $ / S $--> q1              start: push the start symbol
    q1 --ε, A / α----> q1              one transition per rule A ::= α
    q1 --t, t / ε----> q1              consume a terminal matching the input
    q1 --ε, $ / $----> q2              accept once only the bottom marker remains

It is immutable and safe to share between sessions and threads.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum

from pushdown_decoding.grammar.symbols import Grammar, NonTerminal, Rule, Symbol, is_terminal


class ControlState(str, Enum):
    """Control states of the automaton."""

    START = "q0"
    PARSE = "q1"
    ACCEPT = "q2"


class _BottomMarker:
    """Stack bottom. Never popped."""

    _instance: _BottomMarker | None = None

    def __new__(cls) -> _BottomMarker:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "BOTTOM"

    def __str__(self) -> str:
        return "$"


BOTTOM = _BottomMarker()

StackSymbol = Symbol | _BottomMarker


@dataclass(frozen=True)
class Transition:
    """One entry of the transition relation.

    Attributes:
        source: Control state the transition leaves
        stack_top: Symbol that must be on top of the stack
        target: Control state the transition enters
        consumes: Terminal read from the input, or None for an ε-move
        pop: Whether ``stack_top`` is removed
        push: Symbols pushed afterwards, first element ends on top
        rule: The grammar rule an expansion came from
    """

    source: ControlState
    stack_top: StackSymbol
    target: ControlState
    consumes: Symbol | None = None
    pop: bool = True
    push: tuple[Symbol, ...] = ()
    rule: Rule | None = None

    @property
    def is_epsilon(self) -> bool:
        return self.consumes is None

    def __str__(self) -> str:
        read = "ε" if self.consumes is None else str(self.consumes)
        replaced = " ".join(str(s) for s in self.push)
        if not self.pop:
            replaced = f"{replaced} {self.stack_top}".strip()
        return (
            f"({self.source.value}, {read}, {self.stack_top}) -> "
            f"({self.target.value}, {replaced or 'ε'})"
        )


@dataclass(frozen=True)
class PushdownAutomaton:
    """Immutable PDA with indexed transitions.

    Attributes:
        grammar: The (transformed) grammar the automaton recognises
        transitions: Full transition relation, in construction order
        fingerprint: Stable digest of the grammar, used as a cache key space
    """

    grammar: Grammar
    transitions: tuple[Transition, ...]
    start_state: ControlState = ControlState.START
    accept_states: frozenset[ControlState] = frozenset({ControlState.ACCEPT})
    fingerprint: str = field(init=False)
    _epsilon: dict[tuple[ControlState, StackSymbol], tuple[Transition, ...]] = field(
        init=False, repr=False, compare=False, hash=False
    )
    _consume: dict[tuple[ControlState, StackSymbol], Transition] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        epsilon: dict[tuple[ControlState, StackSymbol], list[Transition]] = {}
        consume: dict[tuple[ControlState, StackSymbol], Transition] = {}
        for t in self.transitions:
            key = (t.source, t.stack_top)
            if t.is_epsilon:
                epsilon.setdefault(key, []).append(t)
            else:
                consume[key] = t
        object.__setattr__(self, "_epsilon", {k: tuple(v) for k, v in epsilon.items()})
        object.__setattr__(self, "_consume", consume)
        digest = hashlib.sha256(
            f"{self.grammar.start}\n{self.grammar}".encode("utf-8")
        ).hexdigest()
        object.__setattr__(self, "fingerprint", digest[:16])

    @property
    def start_symbol(self) -> str:
        return self.grammar.start

    @property
    def states(self) -> tuple[ControlState, ...]:
        return tuple(ControlState)

    @property
    def stack_alphabet(self) -> frozenset[StackSymbol]:
        """Terminals, nonterminals and the bottom marker."""
        symbols: set[StackSymbol] = {BOTTOM}
        symbols.update(NonTerminal(name) for name in self.grammar.nonterminals)
        symbols.update(self.grammar.terminals)
        return frozenset(symbols)

    def rules_for(self, name: str) -> tuple[Rule, ...]:
        """Every alternative of a nonterminal; none is preferred over another."""
        return self.grammar.rules_for(name)

    def epsilon_moves(self, state: ControlState, top: StackSymbol) -> tuple[Transition, ...]:
        return self._epsilon.get((state, top), ())

    def consume_move(self, state: ControlState, top: StackSymbol) -> Transition | None:
        return self._consume.get((state, top))

    def is_final(self, state: ControlState) -> bool:
        return state in self.accept_states

    def describe(self) -> str:
        """Multi-line dump of the rules and the transition table."""
        lines = [f"start: {self.start_symbol}", "", "rules:"]
        lines.extend(f"  {rule}" for rule in self.grammar.rules)
        lines.append("")
        lines.append(f"transitions ({len(self.transitions)}):")
        lines.extend(f"  {t}" for t in self.transitions)
        return "\n".join(lines)


def build_transitions(grammar: Grammar) -> tuple[Transition, ...]:
    """Translate a grammar into the PDA transition relation."""
    transitions = [
        Transition(
            ControlState.START,
            BOTTOM,
            ControlState.PARSE,
            pop=False,
            push=(NonTerminal(grammar.start),),
        )
    ]
    for rule in grammar.rules:
        transitions.append(
            Transition(
                ControlState.PARSE,
                NonTerminal(rule.lhs),
                ControlState.PARSE,
                push=rule.body,
                rule=rule,
            )
        )
    terminals = sorted(grammar.terminals, key=str)
    for terminal in terminals:
        assert is_terminal(terminal)
        transitions.append(
            Transition(ControlState.PARSE, terminal, ControlState.PARSE, consumes=terminal)
        )
    transitions.append(
        Transition(ControlState.PARSE, BOTTOM, ControlState.ACCEPT, pop=False)
    )
    return tuple(transitions)
