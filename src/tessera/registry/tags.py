"""Tag expression parsing.

Grammar (keywords are case-insensitive, ``@`` on tags is optional)::

    expr   := term ("or" term)*
    term   := factor ("and" factor)*
    factor := "not" factor | "(" expr ")" | TAG
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import NoReturn

from tessera.errors import DiscoveryError

TagPredicate = Callable[[frozenset[str]], bool]

_TOKEN_RE = re.compile(r"\s*(\(|\)|[^\s()]+)")
_KEYWORDS = frozenset({"and", "or", "not"})


def normalize_tag(tag: str) -> str:
    """Strip the optional ``@`` prefix from a tag."""
    return tag.strip().removeprefix("@")


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    stripped = expression.rstrip()
    while pos < len(stripped):
        match = _TOKEN_RE.match(stripped, pos)
        if match is None:  # pragma: no cover - the pattern matches any non-space run
            msg = f"Invalid tag expression: {expression!r}"
            raise DiscoveryError(msg)
        tokens.append(match.group(1))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._pos = 0

    def parse(self) -> TagPredicate:
        predicate = self._expr()
        if self._pos != len(self._tokens):
            self._fail(f"unexpected token {self._tokens[self._pos]!r}")
        return predicate

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept_keyword(self, keyword: str) -> bool:
        token = self._peek()
        if token is not None and token.lower() == keyword:
            self._pos += 1
            return True
        return False

    def _expr(self) -> TagPredicate:
        operands = [self._term()]
        while self._accept_keyword("or"):
            operands.append(self._term())
        if len(operands) == 1:
            return operands[0]
        return lambda tags: any(p(tags) for p in operands)

    def _term(self) -> TagPredicate:
        operands = [self._factor()]
        while self._accept_keyword("and"):
            operands.append(self._factor())
        if len(operands) == 1:
            return operands[0]
        return lambda tags: all(p(tags) for p in operands)

    def _factor(self) -> TagPredicate:
        if self._accept_keyword("not"):
            inner = self._factor()
            return lambda tags: not inner(tags)

        token = self._peek()
        if token is None:
            self._fail("unexpected end of expression")
        self._pos += 1

        if token == "(":
            inner = self._expr()
            if self._peek() != ")":
                self._fail("missing ')'")
            self._pos += 1
            return inner
        if token == ")" or token.lower() in _KEYWORDS:
            self._fail(f"unexpected token {token!r}")

        tag = normalize_tag(token)
        return lambda tags: tag in tags

    def _fail(self, reason: str) -> NoReturn:
        msg = f"Invalid tag expression {self._expression!r}: {reason}"
        raise DiscoveryError(msg)


def compile_tag_expression(expression: str) -> TagPredicate:
    """Compile *expression* into a predicate over a set of tags.

    An empty expression matches every case.

    Raises:
        DiscoveryError: On syntax errors.
    """
    if not expression.strip():
        return lambda _tags: True
    return _Parser(expression).parse()
