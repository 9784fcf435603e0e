"""Syntax tree for template expressions."""
from dataclasses import dataclass, field
from typing import Any, List, Tuple, Union


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    """A root identifier such as ``params``, ``vars`` or a symbolic name."""
    id: str


@dataclass(frozen=True)
class Member:
    target: "Node"
    attr: str


@dataclass(frozen=True)
class Index:
    target: "Node"
    index: "Node"


@dataclass(frozen=True)
class Call:
    func: str
    args: Tuple["Node", ...] = ()


Node = Union[Literal, Name, Member, Index, Call]


@dataclass(frozen=True)
class Expression:
    """An unresolved template value.

    ``parts`` holds literal text segments and parsed nodes in source order.
    An expression made of exactly one node keeps the type of that node's
    value when evaluated; anything else is a string interpolation.
    """
    source: str
    parts: Tuple[Union[str, Node], ...] = field(default_factory=tuple)

    @property
    def is_interpolation(self) -> bool:
        return not (len(self.parts) == 1 and not isinstance(self.parts[0], str))

    @property
    def nodes(self) -> List[Node]:
        return [part for part in self.parts if not isinstance(part, str)]

    def __str__(self) -> str:
        return self.source
