"""In-memory resource graph for one template document."""
from typing import Any, Dict, Iterable, List, Optional

from ..errors import DuplicateNameError, UnknownSymbolError
from .models import Module, Node, Output, Parameter, Resource


class ResourceGraph:
    """Resources and modules declared by one document, plus its parameters,
    variables and outputs.

    The graph is built once at load time and is read-only while a deployment
    runs; per-node status lives in the run's records, not here.
    """

    def __init__(self, source: Optional[str] = None):
        self.source = source
        self.parameters: Dict[str, Parameter] = {}
        self.variables: Dict[str, Any] = {}
        self.outputs: Dict[str, Output] = {}
        self.settings: Dict[str, Any] = {}
        self._nodes: Dict[str, Node] = {}

    def add_resource(self, resource: Resource) -> None:
        self._add(resource)

    def add_module(self, module: Module) -> None:
        self._add(module)

    def add_parameter(self, parameter: Parameter) -> None:
        if parameter.name in self.parameters:
            raise DuplicateNameError(parameter.name, self._scope_label("parameters"))
        self.parameters[parameter.name] = parameter

    def add_output(self, output: Output) -> None:
        if output.name in self.outputs:
            raise DuplicateNameError(output.name, self._scope_label("outputs"))
        self.outputs[output.name] = output

    def _add(self, node: Node) -> None:
        if node.name in self._nodes:
            raise DuplicateNameError(node.name, self._scope_label())
        self._nodes[node.name] = node

    def _scope_label(self, section: Optional[str] = None) -> Optional[str]:
        label = self.source
        if section:
            label = f"{label or 'template'} {section}"
        return label

    def get_by_name(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError:
            raise UnknownSymbolError(name) from None

    def all_nodes(self) -> Iterable[Node]:
        """Every resource and module in declaration order.

        The returned view is lazy and can be iterated any number of times.
        """
        return self._nodes.values()

    def resources(self) -> List[Resource]:
        return [node for node in self._nodes.values() if isinstance(node, Resource)]

    def modules(self) -> List[Module]:
        return [node for node in self._nodes.values() if isinstance(node, Module)]

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"ResourceGraph(source={self.source!r}, nodes={list(self._nodes)})"
