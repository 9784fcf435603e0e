"""Static reference analysis over raw template values.

This pass runs before the resolver and turns every reference hidden in an
expression into an explicit dependency edge, so the resolver itself never
has to evaluate anything.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Set, Tuple

from ..errors import CyclicDependencyError, TemplateError, UnknownSymbolError
from ..expressions.evaluator import PARAMS_ROOT, VARS_ROOT
from ..expressions.nodes import Call, Expression, Index, Literal, Member, Name, Node
from .graph import ResourceGraph
from .models import DependencyEdge, EdgeKind, Resource

logger = logging.getLogger(__name__)

RESERVED_ROOTS = frozenset({PARAMS_ROOT, VARS_ROOT})


@dataclass
class References:
    """Names a value refers to, grouped by namespace."""
    symbols: Set[str] = field(default_factory=set)
    parameters: Set[str] = field(default_factory=set)
    variables: Set[str] = field(default_factory=set)
    all_parameters: bool = False
    all_variables: bool = False

    def _add_reserved(self, root: str, key: Any) -> None:
        if root == PARAMS_ROOT:
            if isinstance(key, str):
                self.parameters.add(key)
            else:
                self.all_parameters = True
        else:
            if isinstance(key, str):
                self.variables.add(key)
            else:
                self.all_variables = True


def iter_expressions(value: Any) -> Iterator[Expression]:
    """Yield every Expression nested inside a raw template value."""
    if isinstance(value, Expression):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_expressions(item)


def _visit(node: Node, refs: References) -> None:
    if isinstance(node, (Member, Index)) and isinstance(node.target, Name) and node.target.id in RESERVED_ROOTS:
        if isinstance(node, Member):
            key = node.attr
        elif isinstance(node.index, Literal):
            key = node.index.value
        else:
            key = None
            _visit(node.index, refs)
        refs._add_reserved(node.target.id, key)
    elif isinstance(node, Name):
        if node.id in RESERVED_ROOTS:
            refs._add_reserved(node.id, None)
        else:
            refs.symbols.add(node.id)
    elif isinstance(node, Member):
        _visit(node.target, refs)
    elif isinstance(node, Index):
        _visit(node.target, refs)
        _visit(node.index, refs)
    elif isinstance(node, Call):
        for arg in node.args:
            _visit(arg, refs)


def find_references(value: Any) -> References:
    refs = References()
    for expression in iter_expressions(value):
        for node in expression.nodes:
            _visit(node, refs)
    return refs


def _check_parameters(graph: ResourceGraph, refs: References, referrer: str) -> None:
    for name in sorted(refs.parameters):
        if name not in graph.parameters:
            raise UnknownSymbolError(f"{PARAMS_ROOT}.{name}", referrer)


def _check_variables(graph: ResourceGraph, refs: References, referrer: str) -> None:
    for name in sorted(refs.variables):
        if name not in graph.variables:
            raise UnknownSymbolError(f"{VARS_ROOT}.{name}", referrer)


def variable_symbols(graph: ResourceGraph) -> Dict[str, Set[str]]:
    """Map every variable to the symbols it reaches, following other variables."""
    direct = {name: find_references(value) for name, value in graph.variables.items()}
    resolved: Dict[str, Set[str]] = {}

    def reach(name: str, stack: Tuple[str, ...]) -> Set[str]:
        if name in resolved:
            return resolved[name]
        if name in stack:
            cycle = stack[stack.index(name):]
            raise CyclicDependencyError(f"{VARS_ROOT}.{item}" for item in cycle)
        refs = direct[name]
        referrer = f"{VARS_ROOT}.{name}"
        _check_parameters(graph, refs, referrer)
        _check_variables(graph, refs, referrer)
        symbols = set(refs.symbols)
        others = graph.variables if refs.all_variables else refs.variables
        for other in others:
            if refs.all_variables and other == name:
                continue
            symbols |= reach(other, stack + (name,))
        resolved[name] = symbols
        return symbols

    for name in graph.variables:
        reach(name, ())
    return resolved


def _expand_symbols(graph: ResourceGraph, refs: References, var_symbols: Dict[str, Set[str]]) -> Set[str]:
    symbols = set(refs.symbols)
    names = graph.variables if refs.all_variables else refs.variables
    for name in names:
        symbols |= var_symbols.get(name, set())
    return symbols


def _ordered(graph: ResourceGraph, symbols: Set[str], referrer: str) -> List[str]:
    unknown = sorted(symbol for symbol in symbols if symbol not in graph)
    if unknown:
        raise UnknownSymbolError(unknown[0], referrer)
    return [node.name for node in graph.all_nodes() if node.name in symbols]


def collect_edges(graph: ResourceGraph) -> List[DependencyEdge]:
    """Return every dependency edge declared or implied inside one graph.

    Raises:
        UnknownSymbolError: If any reference names an undeclared entity.
        CyclicDependencyError: If variables reference each other in a loop.
        TemplateError: If a parameter default references a resource.
    """
    var_symbols = variable_symbols(graph)

    for parameter in graph.parameters.values():
        refs = find_references(parameter.default_value)
        referrer = f"{PARAMS_ROOT}.{parameter.name}"
        if refs.symbols or refs.variables or refs.all_variables:
            raise TemplateError(f"Default value of parameter '{parameter.name}' may only reference parameters")
        _check_parameters(graph, refs, referrer)

    edges: Dict[Tuple[str, str], DependencyEdge] = {}

    def add(source: str, target: str, kind: EdgeKind) -> None:
        edges.setdefault((source, target), DependencyEdge(source, target, kind))

    for node in graph.all_nodes():
        for target in node.depends_on:
            if target not in graph:
                raise UnknownSymbolError(target, node.name)
            add(node.name, target, EdgeKind.EXPLICIT)

        if isinstance(node, Resource):
            raw: Any = node.properties
            if node.parent is not None:
                parent = graph.get_by_name(node.parent) if node.parent in graph else None
                if not isinstance(parent, Resource):
                    raise UnknownSymbolError(node.parent, node.name)
                add(node.name, node.parent, EdgeKind.PARENT)
            if node.scope is not None:
                if not isinstance(graph.get_by_name(node.scope) if node.scope in graph else None, Resource):
                    raise UnknownSymbolError(node.scope, node.name)
                add(node.name, node.scope, EdgeKind.SCOPE)
        else:
            raw = [node.bindings, node.resource_group]
            if node.scope is not None:
                target = graph.get_by_name(node.scope) if node.scope in graph else None
                if target is None:
                    raise UnknownSymbolError(node.scope, node.name)
                if not (isinstance(target, Resource) and target.is_resource_group):
                    raise TemplateError(f"Module '{node.name}' scope '{node.scope}' is not a resource group")
                add(node.name, node.scope, EdgeKind.SCOPE)

        refs = find_references(raw)
        _check_parameters(graph, refs, node.name)
        _check_variables(graph, refs, node.name)
        for target in _ordered(graph, _expand_symbols(graph, refs, var_symbols), node.name):
            add(node.name, target, EdgeKind.IMPLICIT)

    for output in graph.outputs.values():
        refs = find_references(output.value)
        referrer = f"outputs.{output.name}"
        _check_parameters(graph, refs, referrer)
        _check_variables(graph, refs, referrer)
        _ordered(graph, _expand_symbols(graph, refs, var_symbols), referrer)

    logger.debug("Collected %d dependency edges in %s", len(edges), graph.source or "template")
    return list(edges.values())
