"""Parser for ``${...}`` placeholders in template values.

Placeholders may appear anywhere inside a YAML string. The grammar inside a
placeholder is small:

    expr    := primary ( '.' NAME | '[' expr ']' )*
    primary := NUMBER | STRING | true | false | null
             | NAME | NAME '(' [expr (',' expr)*] ')' | '(' expr ')'

Strings are single-quoted and a doubled quote (``''``) escapes a quote.
``$${`` produces a literal ``${`` and never starts a placeholder.
"""
import re
from typing import Any, List, Optional, Tuple, Union

from ..errors import ExpressionSyntaxError
from .nodes import Call, Expression, Index, Literal, Member, Name, Node

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>'(?:[^']|'')*')
    | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<op>[().,\[\]])
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}

Token = Tuple[str, str, int]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ExpressionSyntaxError(f"Unexpected character {text[pos]!r}", text, pos)
        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group(), pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError("Unexpected end of expression", self.text, len(self.text))
        self.index += 1
        return token

    def _expect(self, value: str) -> Token:
        token = self._next()
        if token[1] != value:
            raise ExpressionSyntaxError(f"Expected '{value}' but found '{token[1]}'", self.text, token[2])
        return token

    def _at(self, value: str) -> bool:
        token = self._peek()
        return token is not None and token[0] == "op" and token[1] == value

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionSyntaxError("Empty expression", self.text, 0)
        node = self._expr()
        token = self._peek()
        if token is not None:
            raise ExpressionSyntaxError(f"Unexpected token '{token[1]}'", self.text, token[2])
        return node

    def _expr(self) -> Node:
        node = self._primary()
        while True:
            if self._at("."):
                self._next()
                kind, value, pos = self._next()
                if kind != "name":
                    raise ExpressionSyntaxError("Expected a member name after '.'", self.text, pos)
                node = Member(node, value)
            elif self._at("["):
                self._next()
                index = self._expr()
                self._expect("]")
                node = Index(node, index)
            else:
                return node

    def _primary(self) -> Node:
        kind, value, pos = self._next()
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind == "name":
            if value in _KEYWORDS:
                return Literal(_KEYWORDS[value])
            if self._at("("):
                self._next()
                return Call(value, tuple(self._arguments()))
            return Name(value)
        if value == "(":
            node = self._expr()
            self._expect(")")
            return node
        raise ExpressionSyntaxError(f"Unexpected token '{value}'", self.text, pos)

    def _arguments(self) -> List[Node]:
        args: List[Node] = []
        if self._at(")"):
            self._next()
            return args
        while True:
            args.append(self._expr())
            if self._at(","):
                self._next()
                continue
            self._expect(")")
            return args


def parse_expression(text: str) -> Node:
    """Parse the body of a single placeholder."""
    return _Parser(text).parse()


def _find_close(source: str, start: int) -> int:
    in_string = False
    for pos in range(start, len(source)):
        char = source[pos]
        if char == "'":
            in_string = not in_string
        elif char == "}" and not in_string:
            return pos
    raise ExpressionSyntaxError("Unterminated placeholder", source, start - 2)


def parse_template_string(source: str) -> Union[str, Expression]:
    """Split a string into literal text and parsed placeholders.

    Returns the plain string when it contains no placeholder.
    """
    parts: List[Union[str, Node]] = []
    buffer: List[str] = []
    pos = 0
    while pos < len(source):
        if source.startswith("$${", pos):
            buffer.append("${")
            pos += 3
        elif source.startswith("${", pos):
            end = _find_close(source, pos + 2)
            if buffer:
                parts.append("".join(buffer))
                buffer = []
            parts.append(parse_expression(source[pos + 2:end]))
            pos = end + 1
        else:
            buffer.append(source[pos])
            pos += 1
    if buffer:
        parts.append("".join(buffer))

    if not any(not isinstance(part, str) for part in parts):
        return "".join(parts)
    return Expression(source, tuple(parts))


def parse_template_value(value: Any) -> Any:
    """Recursively convert every placeholder string into an Expression."""
    if isinstance(value, str):
        return parse_template_string(value)
    if isinstance(value, dict):
        return {key: parse_template_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_template_value(item) for item in value]
    return value
