"""Clarity 值 repr 解析

Stacks API 以 repr 文本返回 print 事件的值，例如：
    (tuple (amount u1000000) (event "deposit") (property-id u1) (user 'SP2J6...))
解析为 Python 值：tuple -> dict，uint/int -> int，string -> str，principal -> str，
buffer -> "0x..." 字符串，none -> None，(some x) -> x，(ok x)/(err x) -> {"ok"/"err": x}。
"""

from typing import Any

from .exceptions import AmbiguousResponseError


class ClarityParseError(AmbiguousResponseError):
    """repr 文本无法解析"""


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    i = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch in "()":
            tokens.append(ch)
            i += 1
        elif ch == '"' or (ch == "u" and text.startswith('u"', i)):
            start = i
            i += 2 if ch == "u" else 1
            while i < length and text[i] != '"':
                i += 2 if text[i] == "\\" else 1
            if i >= length:
                raise ClarityParseError(f"unterminated string in {text!r}")
            i += 1
            tokens.append(text[start:i])
        else:
            start = i
            while i < length and not text[i].isspace() and text[i] not in "()":
                i += 1
            tokens.append(text[start:i])
    return tokens


def _unescape(literal: str) -> str:
    body = literal[2:-1] if literal.startswith("u") else literal[1:-1]
    return (
        body.replace('\\"', '"')
        .replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace("\\\\", "\\")
    )


def _atom(token: str) -> Any:
    if token.startswith('"') or token.startswith('u"'):
        return _unescape(token)
    if token == "true":
        return True
    if token == "false":
        return False
    if token == "none":
        return None
    if token.startswith("'"):
        return token[1:]
    if token.startswith("0x"):
        return token.lower()
    if token.startswith("u") and token[1:].isdigit():
        return int(token[1:])
    try:
        return int(token)
    except ValueError:
        raise ClarityParseError(f"unknown atom {token!r}") from None


class _Parser:
    def __init__(self, tokens: list[str]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _next(self) -> str:
        if self._pos >= len(self._tokens):
            raise ClarityParseError("unexpected end of input")
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _expect(self, token: str) -> None:
        actual = self._next()
        if actual != token:
            raise ClarityParseError(f"expected {token!r}, got {actual!r}")

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def value(self) -> Any:
        token = self._next()
        if token == ")":
            raise ClarityParseError("unexpected ')'")
        if token != "(":
            return _atom(token)

        head = self._next()
        if head == "tuple":
            result: dict[str, Any] = {}
            while self._tokens[self._pos] != ")":
                self._expect("(")
                key = self._next()
                result[key] = self.value()
                self._expect(")")
            self._expect(")")
            return result
        if head == "list":
            items = []
            while self._tokens[self._pos] != ")":
                items.append(self.value())
            self._expect(")")
            return items
        if head == "some":
            inner = self.value()
            self._expect(")")
            return inner
        if head in ("ok", "err"):
            inner = self.value()
            self._expect(")")
            return {head: inner}
        raise ClarityParseError(f"unsupported form ({head} ...)")


def parse_clarity_repr(text: str) -> Any:
    """解析 Clarity repr 文本

    Raises:
        ClarityParseError: 文本不完整或包含不支持的形式
    """
    parser = _Parser(_tokenize(text.strip()))
    try:
        result = parser.value()
    except IndexError:
        raise ClarityParseError(f"unbalanced parentheses in {text!r}") from None
    if not parser.at_end():
        raise ClarityParseError(f"trailing tokens in {text!r}")
    return result
