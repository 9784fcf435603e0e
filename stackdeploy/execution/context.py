"""Per-run deployment state and frame-scoped evaluation."""
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..config import DeploymentScope, EngineSettings
from ..errors import ExpressionError, MissingParameterError, StackDeployError, UnknownSymbolError, UnresolvedReferenceError
from ..expressions.evaluator import EvaluationContext, ExpressionEvaluator
from ..graph.graph import ResourceGraph
from ..graph.models import Module
from ..provisioning.client import ProvisioningClient
from .models import NodeRecord, NodeState


class DeploymentContext:
    """Everything a single deployment run owns.

    A fresh context is created for every run and passed explicitly to the
    components that need it; nothing is kept in module-level state.
    """

    def __init__(
        self,
        client: ProvisioningClient,
        scope: DeploymentScope,
        settings: Optional[EngineSettings] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
    ):
        self.client = client
        self.scope = scope
        self.settings = settings or EngineSettings()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.records: Dict[str, NodeRecord] = {}
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new nodes; in-flight nodes still finish."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()


@dataclass(eq=False)
class Frame:
    """One instantiated document: the root template or a module instance."""
    path: Tuple[str, ...]
    graph: ResourceGraph
    bindings: Dict[str, Any] = field(default_factory=dict)
    parent: Optional["Frame"] = None
    module: Optional[Module] = None
    scope: Optional[DeploymentScope] = None
    parameters: Optional[Dict[str, Any]] = None
    error: Optional[StackDeployError] = None

    def address(self, symbol: str) -> str:
        return ".".join(self.path + (symbol,))

    @property
    def label(self) -> str:
        return ".".join(self.path) or "root"

    @property
    def is_bound(self) -> bool:
        return self.parameters is not None


class FrameContext(EvaluationContext):
    """Evaluation context reading one frame's parameters and the run's records."""

    def __init__(self, frame: Frame, run: DeploymentContext):
        super().__init__(variables=frame.graph.variables, scope=frame.scope)
        self.frame = frame
        self.run = run

    def parameter(self, name: str) -> Any:
        if self.frame.parameters is None:
            raise ExpressionError(f"Parameters of {self.frame.label} are not bound yet")
        try:
            return self.frame.parameters[name]
        except KeyError:
            raise MissingParameterError(name, self.frame.label) from None

    def all_parameters(self) -> Dict[str, Any]:
        if self.frame.parameters is None:
            raise ExpressionError(f"Parameters of {self.frame.label} are not bound yet")
        return dict(self.frame.parameters)

    def symbol(self, name: str) -> Any:
        if name not in self.frame.graph:
            raise UnknownSymbolError(name)
        address = self.frame.address(name)
        record = self.run.records.get(address)
        if record is None or record.state != NodeState.SUCCEEDED:
            raise UnresolvedReferenceError(address, record.state.value if record else None)
        return record.view()
