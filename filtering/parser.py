"""
Filter expression parser

Lexer and recursive-descent parser for the filter language:

    expr     := or
    or       := and ("||" and)*
    and      := relation ("&&" relation)*
    relation := member (("==" | "!=" | "<" | "<=" | ">" | ">=") member)*
    member   := primary ("." IDENT [ "(" args ")" ])*
    primary  := IDENT [ "(" args ")" ] | literal | "(" expr ")"
    literal  := STRING | INT | UINT | FLOAT | "-" number | true | false
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from filtering.types import (
    LOGICAL_AND,
    LOGICAL_OR,
    RELATIONAL_OPERATORS,
    Call,
    Const,
    Expr,
    Ident,
    Select,
)


class FilterError(ValueError):
    """Filter expression could not be parsed or translated"""

    def __init__(self, message: str, position: Optional[int] = None):
        self.position = position
        if position is not None:
            message = f"{message} (1:{position + 1})"
        super().__init__(message)


@dataclass
class Token:
    kind: str
    value: Any
    position: int


# token kinds
IDENT = "ident"
STRING = "string"
NUMBER = "number"
OPERATOR = "operator"
PUNCT = "punct"
EOF = "eof"

_NUMBER_RE = re.compile(r"(\d+\.\d*(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+|\.\d+(?:[eE][+-]?\d+)?)|(0[xX][0-9a-fA-F]+|\d+)([uU]?)", re.ASCII)
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DIGITS = "0123456789"
_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "-")
_PUNCTUATION = "().,"
_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "\\": "\\",
    "\"": "\"",
    "'": "'",
    "/": "/",
}

# deepest parenthesis or argument nesting accepted by the parser
MAX_NESTING_DEPTH = 100


def _read_string(text: str, start: int) -> Tuple[str, int]:
    quote = text[start]
    chars = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == quote:
            return "".join(chars), i + 1
        if ch == "\\":
            if i + 1 >= len(text):
                break
            escaped = text[i + 1]
            if escaped not in _ESCAPES:
                raise FilterError(f"invalid escape sequence \\{escaped}", i)
            chars.append(_ESCAPES[escaped])
            i += 2
            continue
        if ch == "\n":
            break
        chars.append(ch)
        i += 1

    raise FilterError("unterminated string literal", start)


def tokenize(text: str) -> List[Token]:
    """Split a filter expression into tokens"""
    tokens = []
    i = 0
    while i < len(text):
        ch = text[i]

        if ch.isspace():
            i += 1
            continue

        if ch in ("'", "\""):
            value, end = _read_string(text, i)
            tokens.append(Token(STRING, value, i))
            i = end
            continue

        if ch in _DIGITS or (ch == "." and i + 1 < len(text) and text[i + 1] in _DIGITS):
            match = _NUMBER_RE.match(text, i)
            if match is None:
                raise FilterError(f"token recognition error at: '{ch}'", i)
            floating, integer, unsigned = match.groups()
            if floating:
                value = float(floating)
            else:
                value = int(integer, 0) if integer.lower().startswith("0x") else int(integer)
            tokens.append(Token(NUMBER, value, i))
            i = match.end()
            if unsigned and floating:
                raise FilterError("unsigned suffix on floating point literal", i)
            continue

        match = _IDENT_RE.match(text, i)
        if match:
            tokens.append(Token(IDENT, match.group(), i))
            i = match.end()
            continue

        operator = next((op for op in _OPERATORS if text.startswith(op, i)), None)
        if operator:
            tokens.append(Token(OPERATOR, operator, i))
            i += len(operator)
            continue

        if ch in _PUNCTUATION:
            tokens.append(Token(PUNCT, ch, i))
            i += 1
            continue

        raise FilterError(f"token recognition error at: '{ch}'", i)

    tokens.append(Token(EOF, None, len(text)))
    return tokens


class Parser:
    """Recursive-descent parser producing filtering.types nodes"""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != EOF:
            self.pos += 1
        return token

    def _at(self, kind: str, value: Any = None) -> bool:
        token = self.current
        return token.kind == kind and (value is None or token.value == value)

    def _expect(self, kind: str, value: Any = None) -> Token:
        if not self._at(kind, value):
            raise self._unexpected(f"expected '{value or kind}'")
        return self._advance()

    def _unexpected(self, message: str = "") -> FilterError:
        token = self.current
        found = "<EOF>" if token.kind == EOF else repr(token.value)
        detail = f"mismatched input {found}"
        if message:
            detail = f"{detail}, {message}"
        return FilterError(detail, token.position)

    def parse(self) -> Expr:
        if self._at(EOF):
            raise FilterError("empty filter expression", 0)
        expression = self._or()
        if not self._at(EOF):
            raise self._unexpected("expected end of expression")
        return expression

    def _or(self) -> Expr:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise FilterError(
                f"filter expression exceeds maximum nesting depth of {MAX_NESTING_DEPTH}",
                self.current.position,
            )
        try:
            left = self._and()
            while self._at(OPERATOR, LOGICAL_OR):
                self._advance()
                left = Call(LOGICAL_OR, (left, self._and()))
            return left
        finally:
            self.depth -= 1

    def _and(self) -> Expr:
        left = self._relation()
        while self._at(OPERATOR, LOGICAL_AND):
            self._advance()
            left = Call(LOGICAL_AND, (left, self._relation()))
        return left

    def _relation(self) -> Expr:
        left = self._member()
        while self.current.kind == OPERATOR and self.current.value in RELATIONAL_OPERATORS:
            operator = self._advance().value
            left = Call(operator, (left, self._member()))
        return left

    def _member(self) -> Expr:
        expression = self._primary()
        while self._at(PUNCT, "."):
            self._advance()
            field = self._expect(IDENT).value
            if self._at(PUNCT, "("):
                expression = Call(field, self._arguments(), target=expression)
            else:
                expression = Select(expression, field)
        return expression

    def _arguments(self) -> Tuple[Expr, ...]:
        self._expect(PUNCT, "(")
        args = []
        if not self._at(PUNCT, ")"):
            args.append(self._or())
            while self._at(PUNCT, ","):
                self._advance()
                args.append(self._or())
        self._expect(PUNCT, ")")
        return tuple(args)

    def _primary(self) -> Expr:
        token = self.current

        if token.kind == IDENT:
            self._advance()
            if token.value == "true":
                return Const(True)
            if token.value == "false":
                return Const(False)
            if self._at(PUNCT, "("):
                return Call(token.value, self._arguments())
            return Ident(token.value)

        if token.kind in (STRING, NUMBER):
            self._advance()
            return Const(token.value)

        if token.kind == OPERATOR and token.value == "-":
            self._advance()
            number = self._expect(NUMBER)
            return Const(-number.value)

        if self._at(PUNCT, "("):
            self._advance()
            expression = self._or()
            self._expect(PUNCT, ")")
            return expression

        raise self._unexpected()


def parse(text: str) -> Expr:
    """
    Parse a filter expression into an AST

    Args:
        text: filter expression, e.g. 'a == "b" && c.startsWith("d")'

    Returns:
        root expression node

    Raises:
        FilterError: lexical or syntax error
    """
    return Parser(text).parse()
