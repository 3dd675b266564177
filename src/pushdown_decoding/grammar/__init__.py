"""Grammar text parsing and the grammar data model.

The compiler lives in ``pushdown_decoding.grammar.compiler``; it is not
re-exported here because it depends on ``pushdown_decoding.core``.
"""

from pushdown_decoding.grammar.builtin import BUILTIN_GRAMMARS, builtin_grammar
from pushdown_decoding.grammar.parser import parse_grammar
from pushdown_decoding.grammar.symbols import CharClass, Grammar, Literal, NonTerminal, Rule

__all__ = [
    "parse_grammar",
    "builtin_grammar",
    "BUILTIN_GRAMMARS",
    "Grammar",
    "Rule",
    "NonTerminal",
    "Literal",
    "CharClass",
]
