"""Per-node records and the deployment report."""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeState(str, Enum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    MATERIALIZING = "Materializing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    NEVER_ATTEMPTED = "NeverAttempted"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED)


class NodeKind(str, Enum):
    RESOURCE = "resource"
    MODULE = "module"


@dataclass
class NodeRecord:
    """Status of one node during a run.

    Only the worker that handles the node mutates its record.
    """
    address: str
    kind: NodeKind
    resource_type: Optional[str] = None
    api_version: Optional[str] = None
    state: NodeState = NodeState.PENDING
    name: Optional[str] = None
    resource_id: Optional[str] = None
    attempts: int = 0
    retries: int = 0
    no_op: bool = False
    properties: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def view(self) -> Dict[str, Any]:
        """Value seen by expressions that reference this node."""
        if self.kind == NodeKind.MODULE:
            return {"name": self.name, "outputs": dict(self.outputs)}
        view = dict(self.properties)
        view.update({
            "id": self.resource_id,
            "name": self.name,
            "type": self.resource_type,
            "apiVersion": self.api_version,
        })
        return view

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "address": self.address,
            "kind": self.kind.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "retries": self.retries,
            "noOp": self.no_op,
        }
        if self.kind == NodeKind.RESOURCE:
            result.update({"type": self.resource_type, "resourceId": self.resource_id})
        if self.error:
            result["error"] = {"type": self.error_type, "message": self.error}
        return result


@dataclass
class DeploymentReport:
    """Outcome of a deployment run, complete or partial."""
    deployment_name: str
    records: Dict[str, NodeRecord]
    outputs: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    output_error: Optional[str] = None

    def _with_state(self, state: NodeState) -> List[str]:
        return [address for address, record in self.records.items() if record.state == state]

    @property
    def succeeded(self) -> List[str]:
        return self._with_state(NodeState.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self._with_state(NodeState.FAILED)

    @property
    def never_attempted(self) -> List[str]:
        return self._with_state(NodeState.NEVER_ATTEMPTED)

    @property
    def success(self) -> bool:
        return not (self.failed or self.never_attempted or self.cancelled or self.output_error)

    def state_of(self, address: str) -> NodeState:
        return self.records[address].state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment": self.deployment_name,
            "success": self.success,
            "cancelled": self.cancelled,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "neverAttempted": self.never_attempted,
            "outputs": self.outputs,
            "outputError": self.output_error,
            "nodes": [record.to_dict() for record in self.records.values()],
        }

    def save(self, output_path: str) -> None:
        """Save the report to a JSON file.

        Args:
            output_path: Path to write the JSON file.
        """
        with open(output_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
