"""Non-deterministic PDA simulation over configuration sets.

A grammar with several rules per nonterminal gives a non-deterministic
automaton, so the runtime never commits to one derivation. It tracks the set
of every ``(control state, stack, cursor)`` configuration reachable by
ε-closure. Stacks are parent-pointer linked nodes: configurations that share
a suffix share the nodes, and structurally equal stacks hash and compare
equal so the closure deduplicates them.

Configuration sets returned by ``initial_configs`` and ``step`` are always
ε-closed: every configuration has a terminal on top or sits in the accept
state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from pushdown_decoding.core.automaton import (
    BOTTOM,
    ControlState,
    PushdownAutomaton,
    StackSymbol,
)
from pushdown_decoding.grammar.symbols import Literal, Symbol, is_terminal

logger = logging.getLogger(__name__)


class StackNode:
    """Immutable stack cell pointing at the cell below it."""

    __slots__ = ("symbol", "parent", "depth", "_hash")

    def __init__(self, symbol: StackSymbol, parent: StackNode | None = None) -> None:
        self.symbol = symbol
        self.parent = parent
        self.depth = 1 if parent is None else parent.depth + 1
        self._hash = hash((symbol, 0 if parent is None else parent._hash))

    def push(self, symbols: tuple[Symbol, ...]) -> StackNode:
        """Push ``symbols`` so that ``symbols[0]`` ends up on top."""
        node = self
        for symbol in reversed(symbols):
            node = StackNode(symbol, node)
        return node

    def top_down(self) -> list[StackSymbol]:
        """Symbols from top to bottom."""
        out = []
        node: StackNode | None = self
        while node is not None:
            out.append(node.symbol)
            node = node.parent
        return out

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StackNode):
            return NotImplemented
        a: StackNode | None = self
        b: StackNode | None = other
        while a is not b:
            if a is None or b is None:
                return False
            if a._hash != b._hash or a.depth != b.depth or a.symbol != b.symbol:
                return False
            a, b = a.parent, b.parent
        return True

    def __repr__(self) -> str:
        return "StackNode(" + " ".join(str(s) for s in self.top_down()) + ")"


BOTTOM_NODE = StackNode(BOTTOM)


@dataclass(frozen=True)
class Config:
    """One PDA configuration.

    Attributes:
        state: Control state
        stack: Top stack cell
        offset: Characters of the top Literal already matched (sub-terminal cursor)
    """

    state: ControlState
    stack: StackNode
    offset: int = 0

    @property
    def at_bottom(self) -> bool:
        return self.stack.parent is None


ConfigSet = frozenset[Config]

EMPTY: ConfigSet = frozenset()


def closure(automaton: PushdownAutomaton, configs: Iterable[Config]) -> ConfigSet:
    """Follow every ε-move and keep the configurations that cannot move further."""
    settled: set[Config] = set()
    seen: set[Config] = set()
    work = list(configs)
    while work:
        cfg = work.pop()
        if cfg in seen:
            continue
        seen.add(cfg)
        moves = automaton.epsilon_moves(cfg.state, cfg.stack.symbol) if cfg.offset == 0 else ()
        if not moves:
            if is_terminal(cfg.stack.symbol) or automaton.is_final(cfg.state):
                settled.add(cfg)
            continue
        for move in moves:
            base = cfg.stack.parent if move.pop else cfg.stack
            assert base is not None, "bottom marker popped"
            work.append(Config(move.target, base.push(move.push)))
    return frozenset(settled)


def initial_configs(automaton: PushdownAutomaton) -> ConfigSet:
    """The closed configuration set before any input: stack = [$]."""
    return closure(automaton, [Config(automaton.start_state, BOTTOM_NODE)])


def step(automaton: PushdownAutomaton, configs: ConfigSet, char: str) -> ConfigSet:
    """Consume one input character.

    Every configuration whose top terminal accepts ``char`` advances: a
    multi-character literal moves its cursor and stays on the stack until the
    last character, anything else is popped. The result is ε-closed. An
    empty result means ``char`` is rejected.
    """
    advanced: list[Config] = []
    for cfg in configs:
        top = cfg.stack.symbol
        move = automaton.consume_move(cfg.state, top)
        if move is None or not top.matches(cfg.offset, char):  # type: ignore[union-attr]
            continue
        if cfg.offset + 1 < len(top):  # type: ignore[arg-type]
            advanced.append(Config(cfg.state, cfg.stack, cfg.offset + 1))
        else:
            assert cfg.stack.parent is not None
            advanced.append(Config(move.target, cfg.stack.parent))
    if not advanced:
        return EMPTY
    return closure(automaton, advanced)


def step_text(automaton: PushdownAutomaton, configs: ConfigSet, text: str) -> ConfigSet:
    """Consume ``text`` character by character; EMPTY as soon as one is rejected."""
    for char in text:
        configs = step(automaton, configs, char)
        if not configs:
            return EMPTY
    return configs


def is_accepting(automaton: PushdownAutomaton, configs: ConfigSet) -> bool:
    """True if some configuration is final with only the bottom marker left."""
    return any(automaton.is_final(c.state) and c.at_bottom for c in configs)


def is_valid_prefix(configs: ConfigSet) -> bool:
    """True while some derivation can still complete."""
    return bool(configs)


def accepts(automaton: PushdownAutomaton, text: str) -> bool:
    """Check whether a complete string is in the grammar's language."""
    return is_accepting(automaton, step_text(automaton, initial_configs(automaton), text))


def _symbol_label(symbol: StackSymbol, offset: int = 0) -> str:
    if offset and isinstance(symbol, Literal):
        # pending remainder of a partially matched literal
        return f"{symbol}@{offset}"
    return str(symbol)


def representative(configs: ConfigSet) -> Config | None:
    """Pick one configuration for display: the shallowest, then by label."""
    if not configs:
        return None
    return min(
        configs,
        key=lambda c: (
            c.stack.depth,
            c.offset,
            [_symbol_label(s) for s in c.stack.top_down()],
        ),
    )


def stack_view(configs: ConfigSet) -> list[str]:
    """Top-down stack labels of the representative configuration."""
    cfg = representative(configs)
    if cfg is None:
        return []
    labels = [_symbol_label(s) for s in cfg.stack.top_down()]
    labels[0] = _symbol_label(cfg.stack.symbol, cfg.offset)
    return labels


def state_label(automaton: PushdownAutomaton, configs: ConfigSet) -> str:
    """Control state label for display, ``"rejected"`` for an empty set."""
    if not configs:
        return "rejected"
    if is_accepting(automaton, configs):
        return ControlState.ACCEPT.value
    return ControlState.PARSE.value


class RuntimeStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RuntimeSnapshot:
    """Saved runtime state; restoring it undoes every step taken since."""

    configs: ConfigSet
    status: RuntimeStatus
    consumed: int


class PDARuntime:
    """One session's automaton state.

    Wraps a configuration set with the Active/Accepted/Rejected state
    machine. Both Accepted and Rejected are terminal.

    Example:
        >>> runtime = PDARuntime(automaton)
        >>> runtime.feed_text('{"a":1}')
        True
        >>> runtime.finish()
        <RuntimeStatus.ACCEPTED: 'accepted'>
    """

    def __init__(self, automaton: PushdownAutomaton) -> None:
        self.automaton = automaton
        self.configs: ConfigSet = initial_configs(automaton)
        self.status = RuntimeStatus.ACTIVE
        self.consumed = 0
        self.checks = 0

    @property
    def is_accepting(self) -> bool:
        return is_accepting(self.automaton, self.configs)

    @property
    def is_valid_prefix(self) -> bool:
        return self.status != RuntimeStatus.REJECTED and is_valid_prefix(self.configs)

    def feed(self, char: str) -> bool:
        """Consume one character. Returns False and moves to REJECTED if invalid."""
        return self.feed_text(char)

    def feed_text(self, text: str) -> bool:
        """Consume ``text`` as a unit; any rejected character rejects the runtime."""
        self._require_active()
        configs = self.configs
        for char in text:
            self.checks += 1
            configs = step(self.automaton, configs, char)
            if not configs:
                logger.debug("rejected %r after %d characters", char, self.consumed)
                self.configs = EMPTY
                self.status = RuntimeStatus.REJECTED
                return False
        self.configs = configs
        self.consumed += len(text)
        return True

    def finish(self) -> RuntimeStatus:
        """Declare the input exhausted.

        Moves to ACCEPTED when the configuration set is accepting; an
        incomplete but valid prefix stays ACTIVE.
        """
        if self.status == RuntimeStatus.ACTIVE and self.is_accepting:
            self.status = RuntimeStatus.ACCEPTED
        return self.status

    def snapshot(self) -> RuntimeSnapshot:
        return RuntimeSnapshot(self.configs, self.status, self.consumed)

    def restore(self, snapshot: RuntimeSnapshot) -> None:
        self.configs = snapshot.configs
        self.status = snapshot.status
        self.consumed = snapshot.consumed

    def stack_view(self) -> list[str]:
        return stack_view(self.configs)

    def state_label(self) -> str:
        if self.status == RuntimeStatus.ACCEPTED:
            return ControlState.ACCEPT.value
        return state_label(self.automaton, self.configs)

    def _require_active(self) -> None:
        if self.status != RuntimeStatus.ACTIVE:
            raise RuntimeError(f"runtime is {self.status.value}, cannot consume input")
