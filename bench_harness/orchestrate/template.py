"""Condition expressions used by ``when:`` keys in manifest templates.

Expressions are parsed once into a small AST and evaluated against a trial's
dimension values, keeping template processing separate from anything the
guest shell later sees::

    'cmplog' in mode and binary != 'Heat_Press'
    not (fuzzer == 'afl' or mode in 'full,ext')

Grammar (lowest precedence first)::

    expr    := and ('or' and)*
    and     := not ('and' not)*
    not     := 'not' not | compare
    compare := atom (('==' | '!=' | 'in' | 'not' 'in') atom)?
    atom    := STRING | 'true' | 'false' | NAME | '(' expr ')'
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Mapping, Union


class TemplateError(ValueError):
    """Raised when a template cannot be resolved for a trial."""


@dataclass(frozen=True)
class Literal:
    value: str | bool


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Contains:
    needle: "Node"
    haystack: "Node"
    negated: bool = False


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str
    operands: tuple["Node", ...]


Node = Union[Literal, Name, Compare, Contains, Not, BoolOp]

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|\(|\))
      | (?P<word>[A-Za-z_][A-Za-z0-9_.-]*)
    )
    """,
    re.VERBOSE,
)
_KEYWORDS = {"and", "or", "not", "in", "true", "false"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        if source[pos:].strip() == "":
            break
        match = _TOKEN.match(source, pos)
        if match is None or match.end() == pos:
            raise TemplateError(f"Unexpected character at {pos} in condition {source!r}")
        if match.group("string") is not None:
            raw = match.group("string")[1:-1]
            tokens.append(_Token("string", re.sub(r"\\(.)", r"\1", raw), match.start("string")))
        elif match.group("op") is not None:
            tokens.append(_Token("op", match.group("op"), match.start("op")))
        else:
            word = match.group("word")
            kind = "keyword" if word in _KEYWORDS else "name"
            tokens.append(_Token(kind, word, match.start("word")))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self._source = source
        self._tokens = _tokenize(source)
        self._index = 0

    def parse(self) -> Node:
        if not self._tokens:
            raise TemplateError("Condition is empty.")
        node = self._parse_or()
        if self._index != len(self._tokens):
            token = self._tokens[self._index]
            raise TemplateError(f"Unexpected {token.text!r} at {token.pos} in condition {self._source!r}")
        return node

    def _peek(self, offset: int = 0) -> _Token | None:
        index = self._index + offset
        return self._tokens[index] if index < len(self._tokens) else None

    def _accept(self, kind: str, text: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == kind and token.text == text:
            self._index += 1
            return True
        return False

    def _parse_or(self) -> Node:
        operands = [self._parse_and()]
        while self._accept("keyword", "or"):
            operands.append(self._parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _parse_and(self) -> Node:
        operands = [self._parse_not()]
        while self._accept("keyword", "and"):
            operands.append(self._parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _parse_not(self) -> Node:
        if self._accept("keyword", "not"):
            return Not(self._parse_not())
        return self._parse_compare()

    def _parse_compare(self) -> Node:
        left = self._parse_atom()
        if self._accept("op", "=="):
            return Compare("==", left, self._parse_atom())
        if self._accept("op", "!="):
            return Compare("!=", left, self._parse_atom())
        if self._accept("keyword", "in"):
            return Contains(left, self._parse_atom())
        token, following = self._peek(), self._peek(1)
        if (
            token is not None
            and following is not None
            and (token.kind, token.text) == ("keyword", "not")
            and (following.kind, following.text) == ("keyword", "in")
        ):
            self._index += 2
            return Contains(left, self._parse_atom(), negated=True)
        return left

    def _parse_atom(self) -> Node:
        token = self._peek()
        if token is None:
            raise TemplateError(f"Unexpected end of condition {self._source!r}")
        self._index += 1
        if token.kind == "string":
            return Literal(token.text)
        if token.kind == "name":
            return Name(token.text)
        if token.kind == "keyword" and token.text in {"true", "false"}:
            return Literal(token.text == "true")
        if token.kind == "op" and token.text == "(":
            node = self._parse_or()
            if not self._accept("op", ")"):
                raise TemplateError(f"Missing ')' in condition {self._source!r}")
            return node
        raise TemplateError(f"Unexpected {token.text!r} at {token.pos} in condition {self._source!r}")


def parse_condition(source: str) -> Node:
    return _Parser(source).parse()


def evaluate(node: Node, context: Mapping[str, str]) -> bool:
    return _truthy(_eval(node, context))


def _eval(node: Node, context: Mapping[str, str]) -> str | bool:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        if node.name not in context:
            raise TemplateError(f"Unknown name {node.name!r} in condition")
        return context[node.name]
    if isinstance(node, Compare):
        left, right = _eval(node.left, context), _eval(node.right, context)
        equal = _as_text(left) == _as_text(right)
        return equal if node.op == "==" else not equal
    if isinstance(node, Contains):
        found = _as_text(_eval(node.needle, context)) in _as_text(_eval(node.haystack, context))
        return not found if node.negated else found
    if isinstance(node, Not):
        return not _truthy(_eval(node.operand, context))
    if isinstance(node, BoolOp):
        if node.op == "and":
            return all(_truthy(_eval(operand, context)) for operand in node.operands)
        return any(_truthy(_eval(operand, context)) for operand in node.operands)
    raise TemplateError(f"Unsupported condition node: {node!r}")


def _as_text(value: str | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _truthy(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value not in {"", "0", "false"}


def check_condition(source: str, context: Mapping[str, str], *, coordinates: Mapping[str, str]) -> bool:
    """Evaluate ``source`` for one trial, naming the trial in any error."""
    try:
        return evaluate(parse_condition(source), context)
    except TemplateError as exc:
        raise TemplateError(f"{exc} (condition {source!r}, trial {_describe(coordinates)})") from exc


def _describe(coordinates: Mapping[str, str]) -> str:
    return ", ".join(f"{key}={value}" for key, value in coordinates.items())


__all__ = [
    "BoolOp",
    "Compare",
    "Contains",
    "Literal",
    "Name",
    "Node",
    "Not",
    "TemplateError",
    "check_condition",
    "evaluate",
    "parse_condition",
]
