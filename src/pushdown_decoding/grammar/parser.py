"""Parser for the EBNF grammar text format.

Format::

    # comment
    object ::= "{" ws (pair ("," ws pair)*)? "}"
    pair   -> string ws ":" ws value ws
    digit  ::= [0-9]

- ``::=``, ``->`` and ``→`` all introduce a rule.
- A rule body runs until the next ``name ::=`` header, a ``;`` or the end.
- Atoms: rule names, ``"literal"``, ``'literal'``, ``[class]`` and
  parenthesised groups, each optionally followed by ``*``, ``+`` or ``?``.
- An empty alternative (or ``""``) is epsilon.

EBNF operators are lowered into plain BNF helper rules so the compiler only
ever sees ``Rule`` objects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from pushdown_decoding.errors import GrammarError, GrammarErrorKind
from pushdown_decoding.grammar.symbols import (
    CharClass,
    Grammar,
    Literal,
    NonTerminal,
    Rule,
    Symbol,
)

_TOKEN_SPEC = [
    ("WS", r"[ \t\r\f]+"),
    ("NEWLINE", r"\n"),
    ("COMMENT", r"#[^\n]*"),
    ("ARROW", r"::=|->|→"),
    ("OR", r"\|"),
    ("SEMI", r";"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("STAR", r"\*"),
    ("PLUS", r"\+"),
    ("QMARK", r"\?"),
    ("STRING", r'"(?:\\.|[^"\\\n])*"'),
    ("SSTRING", r"'(?:\\.|[^'\\\n])*'"),
    ("CLASS", r"\[(?:\\.|[^\]\\\n])*\]"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*(?:-[A-Za-z0-9_]+)*"),
]
MASTER_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_SIMPLE_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "0": "\0",
    "\\": "\\",
    '"': '"',
    "'": "'",
    "/": "/",
    "]": "]",
    "[": "[",
    "-": "-",
    "^": "^",
}


@dataclass
class Tok:
    kind: str
    lexeme: str
    start: int
    line: int
    col: int


def _scan(src: str) -> list[Tok]:
    """Split grammar text into tokens, dropping whitespace and comments."""
    toks: list[Tok] = []
    line = col = 1
    i = 0
    while i < len(src):
        m = MASTER_RE.match(src, i)
        if not m:
            raise GrammarError(
                GrammarErrorKind.SYNTAX,
                f"unexpected character {src[i]!r}\n{_snippet(src, i, col)}",
                line=line,
                column=col,
            )
        kind = m.lastgroup or ""
        lexeme = m.group(0)
        if kind not in ("WS", "NEWLINE", "COMMENT"):
            toks.append(Tok(kind, lexeme, i, line, col))
        if kind == "NEWLINE":
            line += 1
            col = 1
        else:
            col += len(lexeme)
        i = m.end()
    toks.append(Tok("EOF", "", len(src), line, col))
    return toks


def _snippet(src: str, pos: int, col: int) -> str:
    """The source line containing ``pos`` with a caret under column ``col``."""
    start = src.rfind("\n", 0, pos) + 1
    end = src.find("\n", pos)
    if end == -1:
        end = len(src)
    return f"{src[start:end]}\n{' ' * (col - 1)}^"


# --- EBNF expression tree -------------------------------------------------


@dataclass
class _Atom:
    """One item of a sequence: a symbol or a group, with an optional suffix."""

    symbol: Symbol | None = None
    group: list[list[_Atom]] | None = None
    suffix: str = ""
    tok: Tok | None = None


@dataclass
class _RuleDef:
    name: str
    alternatives: list[list[_Atom]]
    tok: Tok


@dataclass
class _Parser:
    src: str
    toks: list[Tok]
    i: int = 0

    def la(self, k: int = 0) -> Tok:
        return self.toks[min(self.i + k, len(self.toks) - 1)]

    def eat(self, kind: str) -> Tok:
        tok = self.la()
        if tok.kind != kind:
            self.fail(tok, f"expected {kind}, got {tok.kind or 'EOF'} {tok.lexeme!r}")
        self.i += 1
        return tok

    def fail(self, tok: Tok, message: str) -> None:
        raise GrammarError(
            GrammarErrorKind.SYNTAX,
            f"{message}\n{_snippet(self.src, tok.start, tok.col)}",
            line=tok.line,
            column=tok.col,
        )

    def at_rule_start(self) -> bool:
        return self.la().kind == "IDENT" and self.la(1).kind == "ARROW"

    def parse(self) -> list[_RuleDef]:
        rules: list[_RuleDef] = []
        while self.la().kind != "EOF":
            if self.la().kind == "SEMI":
                self.i += 1
                continue
            if not self.at_rule_start():
                self.fail(self.la(), "expected a rule header 'name ::='")
            name_tok = self.eat("IDENT")
            self.eat("ARROW")
            alternatives = self.parse_alternatives()
            rules.append(_RuleDef(name_tok.lexeme, alternatives, name_tok))
        if not rules:
            raise GrammarError(GrammarErrorKind.SYNTAX, "grammar has no rules", line=1, column=1)
        return rules

    def parse_alternatives(self) -> list[list[_Atom]]:
        alternatives = [self.parse_sequence()]
        while self.la().kind == "OR":
            self.i += 1
            alternatives.append(self.parse_sequence())
        return alternatives

    def parse_sequence(self) -> list[_Atom]:
        items: list[_Atom] = []
        while True:
            tok = self.la()
            if tok.kind in ("OR", "RPAREN", "SEMI", "EOF") or self.at_rule_start():
                return items
            atom = self.parse_atom()
            while self.la().kind in ("STAR", "PLUS", "QMARK"):
                if atom.suffix:
                    # x** and friends: wrap the inner repetition in a group
                    atom = _Atom(group=[[atom]], tok=atom.tok)
                atom.suffix = self.eat(self.la().kind).lexeme
            if atom.symbol is not None or atom.group is not None:
                items.append(atom)

    def parse_atom(self) -> _Atom:
        tok = self.la()
        if tok.kind == "IDENT":
            self.i += 1
            return _Atom(symbol=NonTerminal(tok.lexeme), tok=tok)
        if tok.kind in ("STRING", "SSTRING"):
            self.i += 1
            text = self.unescape(tok.lexeme[1:-1], tok)
            # "" is an explicit epsilon
            return _Atom(symbol=Literal(text) if text else None, tok=tok)
        if tok.kind == "CLASS":
            self.i += 1
            return _Atom(symbol=self.parse_class(tok), tok=tok)
        if tok.kind == "LPAREN":
            self.i += 1
            group = self.parse_alternatives()
            self.eat("RPAREN")
            return _Atom(group=group, tok=tok)
        self.fail(tok, f"unexpected {tok.kind or 'EOF'} {tok.lexeme!r}")
        raise AssertionError("unreachable")

    def unescape(self, body: str, tok: Tok) -> str:
        return "".join(self._chars(body, tok))

    def _chars(self, body: str, tok: Tok) -> list[str]:
        """Decode escapes, returning one entry per logical character."""
        out: list[str] = []
        i = 0
        while i < len(body):
            char = body[i]
            if char != "\\":
                out.append(char)
                i += 1
                continue
            if i + 1 >= len(body):
                self.fail(tok, "dangling backslash")
            code = body[i + 1]
            if code in _SIMPLE_ESCAPES:
                out.append(_SIMPLE_ESCAPES[code])
                i += 2
            elif code in ("u", "x"):
                width = 4 if code == "u" else 2
                digits = body[i + 2 : i + 2 + width]
                if len(digits) != width or not all(c in "0123456789abcdefABCDEF" for c in digits):
                    self.fail(tok, f"bad \\{code} escape")
                out.append(chr(int(digits, 16)))
                i += 2 + width
            else:
                self.fail(tok, f"unknown escape \\{code}")
        return out

    def parse_class(self, tok: Tok) -> CharClass:
        body = tok.lexeme[1:-1]
        negated = body.startswith("^")
        if negated:
            body = body[1:]
        # Pair each decoded character with whether it was escaped, so an
        # escaped "-" is never read as a range operator.
        chars: list[tuple[str, bool]] = []
        i = 0
        while i < len(body):
            if body[i] == "\\":
                end = i + 2
                if end <= len(body) and body[i + 1] in ("u", "x"):
                    end = i + (6 if body[i + 1] == "u" else 4)
                decoded = self._chars(body[i:end], tok)
                chars.append((decoded[0], True))
                i = end
            else:
                chars.append((body[i], False))
                i += 1
        if not chars:
            self.fail(tok, "empty character class")
        ranges: list[tuple[str, str]] = []
        j = 0
        while j < len(chars):
            low = chars[j][0]
            if j + 2 < len(chars) and chars[j + 1] == ("-", False):
                high = chars[j + 2][0]
                if high < low:
                    self.fail(tok, f"reversed range {low!r}-{high!r}")
                ranges.append((low, high))
                j += 3
            else:
                ranges.append((low, low))
                j += 1
        return CharClass(tuple(ranges), negated)


# --- lowering to BNF --------------------------------------------------------


@dataclass
class _Lowering:
    """Expands groups and ``* + ?`` suffixes into helper rules."""

    rules: list[Rule] = field(default_factory=list)
    helpers: list[Rule] = field(default_factory=list)
    taken: set[str] = field(default_factory=set)
    counters: dict[str, int] = field(default_factory=dict)

    def fresh(self, owner: str, kind: str) -> str:
        n = self.counters.get(owner, 0)
        while True:
            n += 1
            name = f"{owner}__{kind}{n}"
            if name not in self.taken:
                break
        self.counters[owner] = n
        self.taken.add(name)
        return name

    def lower_rule(
        self, name: str, alternatives: list[list[_Atom]], out: list[Rule] | None = None
    ) -> None:
        out = self.rules if out is None else out
        for seq in alternatives:
            out.append(Rule(name, tuple(self.lower_sequence(name, seq))))

    def lower_sequence(self, owner: str, atoms: list[_Atom]) -> list[Symbol]:
        body: list[Symbol] = []
        for atom in atoms:
            base = self.lower_base(owner, atom)
            if not atom.suffix:
                body.extend(base)
            elif atom.suffix == "?":
                opt = self.fresh(owner, "opt")
                self.helpers.append(Rule(opt, tuple(base)))
                self.helpers.append(Rule(opt, ()))
                body.append(NonTerminal(opt))
            else:
                rep = self.fresh(owner, "rep")
                # rep ::= base rep | ε   (right recursive)
                self.helpers.append(Rule(rep, tuple(base) + (NonTerminal(rep),)))
                self.helpers.append(Rule(rep, ()))
                if atom.suffix == "+":
                    body.extend(base)
                body.append(NonTerminal(rep))
        return body

    def lower_base(self, owner: str, atom: _Atom) -> list[Symbol]:
        if atom.symbol is not None:
            return [atom.symbol]
        assert atom.group is not None
        if len(atom.group) == 1 and not atom.suffix:
            # a plain parenthesised sequence needs no helper rule
            return self.lower_sequence(owner, atom.group[0])
        grp = self.fresh(owner, "grp")
        self.lower_rule(grp, atom.group, self.helpers)
        return [NonTerminal(grp)]


def parse_grammar(text: str, start: str | None = None) -> Grammar:
    """Parse grammar text into a BNF ``Grammar``.

    Args:
        text: Grammar source in the EBNF format described above
        start: Start symbol; defaults to the first rule's name

    Returns:
        Grammar with EBNF operators lowered to helper rules

    Raises:
        GrammarError: With kind SYNTAX on malformed text
    """
    defs = _Parser(text, _scan(text)).parse()
    lowering = _Lowering(taken={d.name for d in defs})
    for rule_def in defs:
        lowering.lower_rule(rule_def.name, rule_def.alternatives)
    # user rules first, helpers after, so rule tables read in declaration order
    return Grammar(start or defs[0].name, tuple(lowering.rules + lowering.helpers))
