"""Quantity expression evaluator.

Grammar (recursive descent):

    expr   := term (('+' | '-') term)*
    term   := factor (('*' | '/') factor)*
    factor := ('+' | '-') factor | NUMBER | IDENT | '(' expr ')'

Identifiers are resolved against a variable mapping as whole tokens, so a
variable named ``height`` never matches inside ``height_ft``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass

from takeoffcalc.errors import QuantityExpressionError

_TOKEN = re.compile(
    r"\s*(?:(?P<number>\d+(?:\.\d*)?|\.\d+)|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)|(?P<op>[-+*/()]))"
)


@dataclass(frozen=True)
class Token:
    kind: str  # number, ident, op, end
    text: str
    position: int


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    position = 0
    length = len(expression)
    while position < length:
        if expression[position].isspace():
            position += 1
            continue
        match = _TOKEN.match(expression, position)
        if match is None or match.end() == position:
            raise QuantityExpressionError(
                f"Invalid character {expression[position]!r} at position {position} in {expression!r}",
                expression,
            )
        kind = match.lastgroup or "op"
        tokens.append(Token(kind, match.group(kind), match.start(kind)))
        position = match.end()
    tokens.append(Token("end", "", length))
    return tokens


class _Parser:
    def __init__(self, expression: str, variables: Mapping[str, float]):
        self.expression = expression
        self.variables = variables
        self.tokens = tokenize(expression)
        self.index = 0

    def _error(self, message: str) -> QuantityExpressionError:
        return QuantityExpressionError(f"{message} in {self.expression!r}", self.expression)

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def parse(self) -> float:
        if self.current.kind == "end":
            raise self._error("Empty expression")
        value = self._expr()
        if self.current.kind != "end":
            raise self._error(f"Unexpected {self.current.text!r} at position {self.current.position}")
        return value

    def _expr(self) -> float:
        value = self._term()
        while self.current.kind == "op" and self.current.text in "+-":
            op = self._advance().text
            right = self._term()
            value = value + right if op == "+" else value - right
        return value

    def _term(self) -> float:
        value = self._factor()
        while self.current.kind == "op" and self.current.text in "*/":
            op = self._advance().text
            right = self._factor()
            if op == "*":
                value = value * right
            else:
                if right == 0:
                    raise self._error("Division by zero")
                value = value / right
        return value

    def _factor(self) -> float:
        token = self.current
        if token.kind == "op" and token.text in "+-":
            self._advance()
            operand = self._factor()
            return operand if token.text == "+" else -operand
        if token.kind == "number":
            self._advance()
            return float(token.text)
        if token.kind == "ident":
            self._advance()
            if token.text not in self.variables:
                raise self._error(f"Unknown variable {token.text!r}")
            return float(self.variables[token.text])
        if token.kind == "op" and token.text == "(":
            self._advance()
            value = self._expr()
            if self.current.text != ")":
                raise self._error("Missing closing parenthesis")
            self._advance()
            return value
        if token.kind == "end":
            raise self._error("Unexpected end of expression")
        raise self._error(f"Unexpected {token.text!r} at position {token.position}")


def evaluate(expression: str, variables: Mapping[str, float] | None = None) -> float:
    """Evaluate an arithmetic quantity expression.

    Raises:
        QuantityExpressionError: On any invalid token, syntax error, unknown
            variable, division by zero or non-finite result.
    """
    result = _Parser(expression, variables or {}).parse()
    if not math.isfinite(result):
        raise QuantityExpressionError(
            f"Expression did not evaluate to a finite number: {expression!r}", expression
        )
    return result
