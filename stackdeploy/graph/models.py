"""Data models for the resource graph."""
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

if TYPE_CHECKING:
    from .graph import ResourceGraph

RESOURCE_GROUP_TYPE = "Microsoft.Resources/resourceGroups"


class ParameterType(str, Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    OBJECT = "object"
    ARRAY = "array"
    SECURE_STRING = "secureString"
    SECURE_OBJECT = "secureObject"


class EdgeKind(str, Enum):
    """Why one node depends on another."""
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"
    PARENT = "parent"
    SCOPE = "scope"
    MODULE = "module"


@dataclass
class Parameter:
    """Template parameter definition."""
    name: str
    type: ParameterType = ParameterType.STRING
    default_value: Any = None
    has_default: bool = False
    allowed_values: Optional[List[Any]] = None
    secure: bool = False
    description: Optional[str] = None

    @property
    def is_secure(self) -> bool:
        return self.secure or self.type in (ParameterType.SECURE_STRING, ParameterType.SECURE_OBJECT)


@dataclass
class Resource:
    """Declared resource.

    ``properties`` is the request body sent to the provisioning API after
    evaluation; ``name`` is the symbolic name used in expressions.
    """
    name: str
    type: str
    api_version: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    scope: Optional[str] = None
    parent: Optional[str] = None

    @property
    def is_resource_group(self) -> bool:
        return self.type.lower() == RESOURCE_GROUP_TYPE.lower()


@dataclass
class Module:
    """Nested template instantiated with an explicit parameter binding."""
    name: str
    source: str
    graph: "ResourceGraph"
    bindings: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    scope: Optional[str] = None
    resource_group: Any = None


@dataclass
class Output:
    name: str
    value: Any


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` depends on ``target``."""
    source: str
    target: str
    kind: EdgeKind = EdgeKind.EXPLICIT


Node = Union[Resource, Module]
