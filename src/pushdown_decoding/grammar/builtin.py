"""Ready-made grammars."""

JSON_GRAMMAR = r"""
# JSON (RFC 8259) with optional whitespace between tokens
root     ::= ws value ws
value    ::= object | array | string | number | "true" | "false" | "null"
object   ::= "{" ws ( member ( "," ws member )* )? "}"
member   ::= string ws ":" ws value ws
array    ::= "[" ws ( value ws ( "," ws value ws )* )? "]"
string   ::= "\"" char* "\""
char     ::= [^"\\\u0000-\u001f] | "\\" escape
escape   ::= ["\\/bfnrt] | "u" hex hex hex hex
hex      ::= [0-9a-fA-F]
number   ::= "-"? int frac? exp?
int      ::= "0" | [1-9] [0-9]*
frac     ::= "." [0-9]+
exp      ::= [eE] [+\-]? [0-9]+
ws       ::= [ \t\n\r]*
"""

SQL_GRAMMAR = r"""
# SELECT statements: columns, one table, optional WHERE and ORDER BY
query      ::= "SELECT" sp columns sp "FROM" sp ident where? order? ";"?
columns    ::= "*" | ident ( "," " "? ident )*
where      ::= sp "WHERE" sp condition ( sp ( "AND" | "OR" ) sp condition )*
condition  ::= ident " "? op " "? operand
op         ::= "=" | "!=" | "<" | "<=" | ">" | ">="
operand    ::= ident | number | text
order      ::= sp "ORDER BY" sp ident ( sp ( "ASC" | "DESC" ) )?
ident      ::= [a-zA-Z_] [a-zA-Z0-9_]*
number     ::= [0-9]+
text       ::= "'" [^']* "'"
sp         ::= " "+
"""

ARITHMETIC_GRAMMAR = r"""
# integer expressions; left recursive on purpose
expr   ::= expr "+" term | expr "-" term | term
term   ::= term "*" factor | term "/" factor | factor
factor ::= [0-9]+ | "(" expr ")"
"""

BUILTIN_GRAMMARS = {
    "json": JSON_GRAMMAR,
    "sql": SQL_GRAMMAR,
    "arithmetic": ARITHMETIC_GRAMMAR,
}


def builtin_grammar(name: str) -> str:
    """Return the text of a built-in grammar.

    Raises:
        KeyError: If no built-in grammar has that name
    """
    try:
        return BUILTIN_GRAMMARS[name]
    except KeyError:
        raise KeyError(
            f"unknown grammar {name!r}; available: {', '.join(sorted(BUILTIN_GRAMMARS))}"
        ) from None
