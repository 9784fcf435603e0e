"""Module composition: frames, parameter binding and the combined plan."""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from ..config import DeploymentScope
from ..errors import (
    CyclicDependencyError,
    InvalidParameterValueError,
    MissingParameterError,
    StackDeployError,
    TemplateError,
    TypeMismatchError,
    UnresolvedReferenceError,
)
from ..expressions.evaluator import EvaluationContext, ExpressionEvaluator
from ..expressions.functions import type_name
from ..graph.analysis import collect_edges
from ..graph.graph import ResourceGraph
from ..graph.models import DependencyEdge, EdgeKind, Module, Node, Parameter, ParameterType
from ..graph.resolver import DependencyResolver
from .context import DeploymentContext, Frame, FrameContext
from .executor import DeploymentExecutor
from .models import DeploymentReport, NodeKind

logger = logging.getLogger(__name__)

_PARAMETER_TYPES = {
    ParameterType.STRING: str,
    ParameterType.SECURE_STRING: str,
    ParameterType.INT: int,
    ParameterType.BOOL: bool,
    ParameterType.OBJECT: dict,
    ParameterType.SECURE_OBJECT: dict,
    ParameterType.ARRAY: list,
}


def check_parameter_value(parameter: Parameter, value: Any) -> None:
    """Validate a bound parameter value against its declaration.

    Raises:
        TypeMismatchError: If the value does not have the declared type.
        InvalidParameterValueError: If the value is not an allowed value.
    """
    expected = _PARAMETER_TYPES[parameter.type]
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise TypeMismatchError(
            f"Parameter '{parameter.name}' expects {parameter.type.value}, got {type_name(value)}"
        )
    if parameter.allowed_values is not None and value not in parameter.allowed_values:
        raise InvalidParameterValueError(
            f"Value {value!r} is not allowed for parameter '{parameter.name}'; "
            f"allowed: {parameter.allowed_values}"
        )


class _DefaultsContext(EvaluationContext):
    """Context for parameter defaults, which may reference other parameters."""

    def __init__(self, resolver, scope: Optional[DeploymentScope]):
        super().__init__(scope=scope)
        self._resolver = resolver

    def parameter(self, name: str) -> Any:
        return self._resolver(name)


def resolve_parameters(
    graph: ResourceGraph,
    values: Mapping[str, Any],
    evaluator: ExpressionEvaluator,
    scope: Optional[DeploymentScope] = None,
    label: Optional[str] = None,
) -> Dict[str, Any]:
    """Bind every declared parameter from explicit values or defaults.

    Args:
        graph: Graph whose parameters are bound.
        values: Concrete values keyed by parameter name.
        evaluator: Evaluator used for default expressions.
        scope: Deployment scope visible to default expressions.
        label: Frame label used in error messages.

    Returns:
        Dict[str, Any]: Resolved value for every declared parameter.
    """
    unknown = sorted(set(values) - set(graph.parameters))
    if unknown:
        raise TemplateError(f"Unknown parameter '{unknown[0]}' for {label or 'template'}")

    resolved: Dict[str, Any] = {}
    resolving: List[str] = []

    def resolve(name: str) -> Any:
        if name in resolved:
            return resolved[name]
        if name not in graph.parameters:
            raise MissingParameterError(name, label)
        if name in resolving:
            raise CyclicDependencyError(f"params.{item}" for item in resolving[resolving.index(name):])
        parameter = graph.parameters[name]
        resolving.append(name)
        try:
            if name in values:
                value = values[name]
            elif parameter.has_default:
                value = evaluator.evaluate(parameter.default_value, context)
            else:
                raise MissingParameterError(name, label)
        finally:
            resolving.pop()
        check_parameter_value(parameter, value)
        resolved[name] = value
        return value

    context = _DefaultsContext(resolve, scope)
    for name in graph.parameters:
        resolve(name)
    return resolved


@dataclass(eq=False)
class PlanNode:
    """A node of the combined graph across every frame."""
    address: str
    frame: Frame
    node: Node
    inner: Optional[Frame] = None
    depends_on: List[str] = field(default_factory=list)

    @property
    def kind(self) -> NodeKind:
        return NodeKind.MODULE if isinstance(self.node, Module) else NodeKind.RESOURCE


@dataclass
class DeploymentPlan:
    """Every node of every frame, in deployment order."""
    root: Frame
    nodes: Dict[str, PlanNode]
    edges: List[DependencyEdge]

    def __iter__(self) -> Iterator[PlanNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def order(self) -> List[str]:
        return list(self.nodes)


def build_plan(root: Frame) -> DeploymentPlan:
    """Expand module frames into one combined graph and order it.

    Nodes inside a module depend on everything the module node itself
    depends on, and the module node depends on every node of its frame, so
    its outputs only become readable once the whole frame succeeded. The
    combined graph is checked for cycles once, before anything runs.

    Raises:
        CyclicDependencyError: If the combined graph contains a cycle.
    """
    declared: List[str] = []
    plan_nodes: Dict[str, PlanNode] = {}
    edges: List[DependencyEdge] = []

    def expand(frame: Frame, entry: List[str]) -> List[str]:
        local: Dict[str, List[Tuple[str, EdgeKind]]] = defaultdict(list)
        for edge in collect_edges(frame.graph):
            local[edge.source].append((frame.address(edge.target), edge.kind))

        top_level: List[str] = []
        for node in frame.graph.all_nodes():
            address = frame.address(node.name)
            dependencies = local[node.name] + [(target, EdgeKind.MODULE) for target in entry]
            inner = None
            if isinstance(node, Module):
                inner = Frame(
                    path=frame.path + (node.name,),
                    graph=node.graph,
                    bindings=node.bindings,
                    parent=frame,
                    module=node,
                )
                children = expand(inner, [target for target, _ in dependencies])
                dependencies = dependencies + [(child, EdgeKind.MODULE) for child in children]

            targets: List[str] = []
            seen: Set[str] = set()
            for target, kind in dependencies:
                if target not in seen:
                    seen.add(target)
                    targets.append(target)
                    edges.append(DependencyEdge(address, target, kind))
            plan_nodes[address] = PlanNode(address, frame, node, inner=inner, depends_on=targets)
            declared.append(address)
            top_level.append(address)
        return top_level

    expand(root, [])
    order = DependencyResolver.order(declared, edges)
    logger.debug("Deployment order: %s", order)
    return DeploymentPlan(root, {address: plan_nodes[address] for address in order}, edges)


class ModuleInstantiator:
    """Binds frames and evaluates their outputs for one deployment run."""

    def __init__(self, run: DeploymentContext, executor_factory=DeploymentExecutor):
        self.run = run
        self.executor_factory = executor_factory

    def plan(
        self,
        graph: ResourceGraph,
        bound_params: Optional[Mapping[str, Any]] = None,
        scope: Optional[DeploymentScope] = None,
    ) -> DeploymentPlan:
        root = Frame(path=(), graph=graph, bindings=dict(bound_params or {}), scope=scope or self.run.scope)
        return build_plan(root)

    def instantiate(
        self,
        graph: ResourceGraph,
        bound_params: Optional[Mapping[str, Any]] = None,
        scope: Optional[DeploymentScope] = None,
    ) -> DeploymentReport:
        """Deploy a graph and every module beneath it.

        Args:
            graph: Graph of the template being deployed.
            bound_params: Concrete parameter values.
            scope: Target scope; the run's scope when omitted.

        Returns:
            DeploymentReport: Complete or partial report, with outputs on success.

        Raises:
            TemplateError: For structural or parameter errors detected before
                any resource is materialized.
        """
        plan = self.plan(graph, bound_params, scope)
        self.bind(plan.root)

        report = self.executor_factory(self.run, self).execute(plan)
        if report.success:
            try:
                report.outputs = self.outputs(plan.root)
            except StackDeployError as e:
                logger.error("Evaluating outputs failed: %s", e)
                report.output_error = str(e)
        return report

    def bind(self, frame: Frame) -> None:
        """Resolve a frame's parameter namespace and target scope.

        The root frame binds concrete values. A module frame evaluates its
        binding expressions in the parent frame, which is why this runs only
        once every node the module depends on has succeeded.
        """
        if frame.is_bound:
            return
        if frame.error is not None:
            raise frame.error

        try:
            if frame.parent is None:
                values = dict(frame.bindings)
            else:
                self.bind(frame.parent)
                outer = FrameContext(frame.parent, self.run)
                values = {name: self.run.evaluator.evaluate(value, outer) for name, value in frame.bindings.items()}
                frame.scope = self._target_scope(frame, outer)
            frame.parameters = resolve_parameters(
                frame.graph, values, self.run.evaluator, frame.scope, frame.label
            )
        except UnresolvedReferenceError:
            raise
        except StackDeployError as e:
            frame.error = e
            raise
        logger.debug("Bound %s with parameters %s", frame.label, sorted(frame.parameters))

    def _target_scope(self, frame: Frame, outer: FrameContext) -> DeploymentScope:
        parent_scope = frame.parent.scope
        module = frame.module
        scope = parent_scope.with_deployment_name(f"{parent_scope.deployment_name}-{module.name}")
        if module.scope is not None:
            target = outer.symbol(module.scope)
            scope = scope.with_resource_group(target["name"])
        elif module.resource_group is not None:
            resource_group = self.run.evaluator.evaluate(module.resource_group, outer)
            if not isinstance(resource_group, str):
                raise TypeMismatchError(
                    f"Module '{module.name}' resourceGroup must be string, got {type_name(resource_group)}"
                )
            scope = scope.with_resource_group(resource_group)
        return scope

    def outputs(self, frame: Frame) -> Dict[str, Any]:
        """Evaluate a frame's outputs.

        Raises:
            UnresolvedReferenceError: If an output references a node that has
                not succeeded yet.
        """
        self.bind(frame)
        context = FrameContext(frame, self.run)
        return {
            name: self.run.evaluator.evaluate(output.value, context)
            for name, output in frame.graph.outputs.items()
        }

    def read_output(self, frame: Frame, name: str) -> Any:
        """Evaluate a single output of a frame."""
        self.bind(frame)
        try:
            output = frame.graph.outputs[name]
        except KeyError:
            raise TemplateError(f"{frame.label} has no output '{name}'") from None
        return self.run.evaluator.evaluate(output.value, FrameContext(frame, self.run))
