"""In-memory provisioning client for dry runs and tests."""
import copy
import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from .client import ProvisioningClient, ProvisioningRequest, ProvisioningResult

logger = logging.getLogger(__name__)


class InMemoryProvisioningClient(ProvisioningClient):
    """Keeps resources in a dictionary keyed by resource ID.

    Generated runtime values (principal IDs, provisioning state) are derived
    from the resource ID so repeated runs see identical state.
    """

    def __init__(self, delay: float = 0.0, delays: Optional[Dict[str, float]] = None):
        """Initialize the client.

        Args:
            delay: Seconds every create_or_update call blocks, to simulate latency.
            delays: Per node address overrides of ``delay``.
        """
        self.delay = delay
        self.delays = dict(delays or {})
        self.calls: List[Tuple[str, str]] = []
        self.windows: Dict[str, Tuple[float, float]] = {}
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._lock = threading.Lock()

    def fail(self, address: str, *errors: Exception) -> None:
        """Queue errors raised by the next create_or_update calls for a node address."""
        with self._lock:
            self._failures[address].extend(errors)

    @property
    def resources(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._resources)

    def get(self, request: ProvisioningRequest) -> Optional[ProvisioningResult]:
        with self._lock:
            self.calls.append(("get", request.resource_id))
            state = self._resources.get(request.resource_id.lower())
            if state is None:
                return None
            return ProvisioningResult("Succeeded", state["id"], copy.deepcopy(state))

    def create_or_update(self, request: ProvisioningRequest) -> ProvisioningResult:
        started = time.monotonic()
        with self._lock:
            self.calls.append(("create_or_update", request.resource_id))
            failures = self._failures.get(request.address)
            error = failures.popleft() if failures else None

        delay = self.delays.get(request.address, self.delay)
        if delay:
            time.sleep(delay)
        if error is not None:
            logger.debug("Injected failure for %s: %s", request.address, error)
            raise error

        state = self._materialize(request)
        with self._lock:
            self._resources[request.resource_id.lower()] = state
            self.windows[request.address] = (started, time.monotonic())
        return ProvisioningResult("Succeeded", request.resource_id, copy.deepcopy(state))

    @staticmethod
    def _materialize(request: ProvisioningRequest) -> Dict[str, Any]:
        state = copy.deepcopy(request.payload)
        state["id"] = request.resource_id
        state["type"] = request.resource_type
        state.setdefault("name", request.name)

        identity = state.get("identity")
        if isinstance(identity, dict) and "SystemAssigned" in str(identity.get("type", "")):
            seed = uuid.uuid5(uuid.NAMESPACE_URL, request.resource_id.lower())
            identity.setdefault("principalId", str(seed))
            identity.setdefault("tenantId", str(uuid.uuid5(seed, "tenant")))

        properties = state.get("properties")
        if properties is None:
            state["properties"] = properties = {}
        if isinstance(properties, dict):
            properties.setdefault("provisioningState", "Succeeded")
        return state
