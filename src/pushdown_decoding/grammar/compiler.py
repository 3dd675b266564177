"""Grammar compiler: grammar text -> PushdownAutomaton.

Compilation runs in fixed passes:

1. parse the text and lower EBNF to BNF (``parser.parse_grammar``)
2. check every referenced nonterminal and the start symbol are defined
3. rewrite direct left recursion ``A ::= A x | y`` into right recursion
4. drop rules that can never derive a terminal string, and rules
   unreachable from the start symbol
5. reject any remaining left recursion (a leftmost-derivation PDA would
   expand it forever)
6. translate to the PDA transition relation

The function is pure apart from logging warnings for dropped rules.
"""

from __future__ import annotations

import logging

from pushdown_decoding.core.automaton import PushdownAutomaton, build_transitions
from pushdown_decoding.errors import GrammarError, GrammarErrorKind
from pushdown_decoding.grammar.parser import parse_grammar
from pushdown_decoding.grammar.symbols import Grammar, NonTerminal, Rule, Symbol

logger = logging.getLogger(__name__)


def compile_grammar(grammar_text: str, start: str | None = None) -> PushdownAutomaton:
    """Compile grammar text into an immutable pushdown automaton.

    Args:
        grammar_text: Grammar source (see ``pushdown_decoding.grammar.parser``)
        start: Start symbol, defaults to the first rule

    Returns:
        PushdownAutomaton recognising the grammar's language

    Raises:
        GrammarError: SYNTAX, UNDEFINED_SYMBOL, UNPRODUCTIVE_START or LEFT_RECURSION

    Example:
        >>> pda = compile_grammar('list ::= "[" (item ("," item)*)? "]"\\nitem ::= [0-9]+')
        >>> pda.start_symbol
        'list'
    """
    grammar = parse_grammar(grammar_text, start)
    return compile_bnf(grammar)


def compile_bnf(grammar: Grammar) -> PushdownAutomaton:
    """Run passes 2-6 on an already parsed grammar."""
    check_defined(grammar)
    grammar = eliminate_direct_left_recursion(grammar)
    grammar = prune(grammar)
    check_left_recursion(grammar)
    logger.debug(
        "compiled grammar %r: %d rules, %d nonterminals",
        grammar.start,
        len(grammar.rules),
        len(grammar.nonterminals),
    )
    return PushdownAutomaton(grammar, build_transitions(grammar))


def check_defined(grammar: Grammar) -> None:
    """Every referenced nonterminal, and the start symbol, must have a rule."""
    defined = grammar.nonterminals
    if grammar.start not in defined:
        raise GrammarError(
            GrammarErrorKind.UNDEFINED_SYMBOL,
            f"start symbol {grammar.start!r} has no rule",
            symbol=grammar.start,
        )
    for rule in grammar.rules:
        for name in rule.referenced():
            if name not in defined:
                raise GrammarError(
                    GrammarErrorKind.UNDEFINED_SYMBOL,
                    f"{name!r} is used in rule {rule.lhs!r} but never defined",
                    symbol=name,
                )


def eliminate_direct_left_recursion(grammar: Grammar) -> Grammar:
    """Rewrite ``A ::= A a1 | ... | b1 | ...`` as right recursion.

    Produces ``A ::= b1 A__tail | ...`` and ``A__tail ::= a1 A__tail | ... | ε``.
    A bare ``A ::= A`` is dropped since it adds nothing to the language.
    """
    taken = set(grammar.nonterminals)
    rewritten: list[Rule] = []
    done: set[str] = set()
    for rule in grammar.rules:
        name = rule.lhs
        if name in done:
            continue
        done.add(name)
        alternatives = grammar.rules_for(name)
        recursive = [r for r in alternatives if r.body[:1] == (NonTerminal(name),)]
        if not recursive:
            rewritten.extend(alternatives)
            continue
        tails = [r.body[1:] for r in recursive if len(r.body) > 1]
        bases = [r.body for r in alternatives if r not in recursive]
        if not tails:
            rewritten.extend(Rule(name, body) for body in bases)
            continue
        tail = f"{name}__tail"
        n = 1
        while tail in taken:
            n += 1
            tail = f"{name}__tail{n}"
        taken.add(tail)
        logger.debug("rewrote left recursion in %r via %r", name, tail)
        tail_ref: tuple[Symbol, ...] = (NonTerminal(tail),)
        rewritten.extend(Rule(name, body + tail_ref) for body in bases)
        rewritten.extend(Rule(tail, body + tail_ref) for body in tails)
        rewritten.append(Rule(tail, ()))
    return Grammar(grammar.start, tuple(rewritten))


def productive_nonterminals(grammar: Grammar) -> set[str]:
    """Nonterminals that derive at least one finite terminal string."""
    productive: set[str] = set()
    changed = True
    while changed:
        changed = False
        for rule in grammar.rules:
            if rule.lhs in productive:
                continue
            if all(name in productive for name in rule.referenced()):
                productive.add(rule.lhs)
                changed = True
    return productive


def nullable_nonterminals(grammar: Grammar) -> set[str]:
    """Nonterminals that derive the empty string."""
    nullable: set[str] = set()
    changed = True
    while changed:
        changed = False
        for rule in grammar.rules:
            if rule.lhs in nullable:
                continue
            if all(isinstance(s, NonTerminal) and s.name in nullable for s in rule.body):
                nullable.add(rule.lhs)
                changed = True
    return nullable


def prune(grammar: Grammar) -> Grammar:
    """Drop unproductive rules, then rules unreachable from the start symbol."""
    productive = productive_nonterminals(grammar)
    if grammar.start not in productive:
        raise GrammarError(
            GrammarErrorKind.UNPRODUCTIVE_START,
            f"start symbol {grammar.start!r} derives no finite string",
            symbol=grammar.start,
        )
    kept = [r for r in grammar.rules if r.lhs in productive and set(r.referenced()) <= productive]
    dropped = len(grammar.rules) - len(kept)
    if dropped:
        used = {name for r in grammar.rules for name in [r.lhs, *r.referenced()]}
        logger.warning(
            "dropped %d rule(s) using unproductive nonterminals: %s",
            dropped,
            ", ".join(sorted(used - productive)),
        )
    grammar = Grammar(grammar.start, tuple(kept))

    reachable = {grammar.start}
    frontier = [grammar.start]
    while frontier:
        name = frontier.pop()
        for rule in grammar.rules_for(name):
            for ref in rule.referenced():
                if ref not in reachable:
                    reachable.add(ref)
                    frontier.append(ref)
    unreachable = grammar.nonterminals - reachable
    if unreachable:
        logger.warning("unreachable from %r: %s", grammar.start, ", ".join(sorted(unreachable)))
        grammar = Grammar(grammar.start, tuple(r for r in grammar.rules if r.lhs in reachable))
    return grammar


def check_left_recursion(grammar: Grammar) -> None:
    """Reject grammars where ``A`` derives ``A x`` through left corners.

    The left-corner graph has an edge A -> B when some rule of A starts with
    B after a (possibly empty) run of nullable nonterminals. A cycle means
    the PDA's ε-expansions would grow the stack without bound. Cycles that
    leave nothing behind (``A ::= B A`` with B and the rest nullable) are
    harmless but are rejected too, since they are always a grammar mistake.
    """
    nullable = nullable_nonterminals(grammar)
    edges: dict[str, set[str]] = {name: set() for name in grammar.nonterminals}
    for rule in grammar.rules:
        for symbol in rule.body:
            if not isinstance(symbol, NonTerminal):
                break
            edges[rule.lhs].add(symbol.name)
            if symbol.name not in nullable:
                break

    # iterative DFS with colours: 0 = new, 1 = on path, 2 = finished
    colour = {name: 0 for name in edges}
    for root in sorted(edges):
        if colour[root]:
            continue
        path = [root]
        iters = [iter(sorted(edges[root]))]
        colour[root] = 1
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                colour[path.pop()] = 2
                iters.pop()
                continue
            if colour[nxt] == 1:
                cycle = path[path.index(nxt):] + [nxt]
                raise GrammarError(
                    GrammarErrorKind.LEFT_RECURSION,
                    "left recursion through " + " -> ".join(cycle),
                    symbol=nxt,
                )
            if colour[nxt] == 0:
                colour[nxt] = 1
                path.append(nxt)
                iters.append(iter(sorted(edges[nxt])))
