"""Deployment executor: drives every node of a plan to a terminal state."""
import logging
import time
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ProvisioningError, StackDeployError, TemplateError, TransientProvisioningError, TypeMismatchError, UnresolvedReferenceError
from ..expressions.functions import type_name
from ..graph.models import Resource
from ..provisioning.client import ProvisioningRequest, ProvisioningResult
from ..provisioning.ids import build_resource_id, child_resource_id
from .context import DeploymentContext, FrameContext
from .models import DeploymentReport, NodeRecord, NodeState

if TYPE_CHECKING:
    from .modules import DeploymentPlan, ModuleInstantiator, PlanNode

logger = logging.getLogger(__name__)

Listener = Callable[[NodeRecord], None]


def payload_matches(desired: Any, actual: Any) -> bool:
    """True when every value in ``desired`` is present and equal in ``actual``.

    Remote representations carry server-side fields (ids, provisioning
    state), so objects are compared as subsets; arrays must match exactly.
    """
    if isinstance(desired, dict):
        return isinstance(actual, dict) and all(
            key in actual and payload_matches(value, actual[key]) for key, value in desired.items()
        )
    if isinstance(desired, list):
        return (
            isinstance(actual, list)
            and len(desired) == len(actual)
            and all(payload_matches(left, right) for left, right in zip(desired, actual))
        )
    return desired == actual


class DeploymentExecutor:
    """Schedules plan nodes onto a bounded worker pool.

    Eligible nodes are dispatched in deployment order. Only provisioning
    calls block; module completion and bookkeeping run on the scheduler
    thread. After the first terminal failure, or a cancellation request, no
    new node is dispatched and in-flight nodes are allowed to finish.
    """

    def __init__(
        self,
        context: DeploymentContext,
        instantiator: "ModuleInstantiator",
        sleep: Callable[[float], None] = time.sleep,
        listener: Optional[Listener] = None,
    ):
        self.context = context
        self.instantiator = instantiator
        self.sleep = sleep
        self.listener = listener
        self._plan: Optional["DeploymentPlan"] = None
        self._pending: List[str] = []
        self._extra_dependencies: Dict[str, Set[str]] = defaultdict(set)
        self._in_flight: Dict[Future, str] = {}
        self._halted = False

    @property
    def records(self) -> Dict[str, NodeRecord]:
        return self.context.records

    def execute(self, plan: "DeploymentPlan") -> DeploymentReport:
        """Run a plan to completion or until halted.

        Args:
            plan: Ordered combined plan.

        Returns:
            DeploymentReport: Succeeded, failed and never-attempted nodes.
        """
        self._plan = plan
        self._pending = list(plan.order)
        for plan_node in plan:
            resource = plan_node.node if isinstance(plan_node.node, Resource) else None
            self.records[plan_node.address] = NodeRecord(
                address=plan_node.address,
                kind=plan_node.kind,
                resource_type=resource.type if resource else None,
                api_version=resource.api_version if resource else None,
                name=plan_node.node.name if not resource else None,
            )

        settings = self.context.settings
        logger.info(
            "Deploying %d nodes with up to %d concurrent operations",
            len(plan), settings.max_concurrency,
        )
        cancelled = False
        with ThreadPoolExecutor(max_workers=settings.max_concurrency, thread_name_prefix="stackdeploy") as pool:
            while True:
                if self.context.cancelled and not cancelled:
                    cancelled = True
                    self._halted = True
                    logger.warning("Cancellation requested; waiting for %d in-flight nodes", len(self._in_flight))
                if not self._halted:
                    self._schedule(pool)
                if not self._in_flight:
                    break
                done, _ = wait(list(self._in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    self._collect(future)

        for record in self.records.values():
            if record.address in plan.nodes and record.state == NodeState.PENDING:
                record.state = NodeState.NEVER_ATTEMPTED

        report = DeploymentReport(
            deployment_name=plan.root.scope.deployment_name,
            records={address: self.records[address] for address in plan.order},
            cancelled=cancelled,
        )
        logger.info(
            "Deployment finished: %d succeeded, %d failed, %d never attempted",
            len(report.succeeded), len(report.failed), len(report.never_attempted),
        )
        return report

    def _ready(self, address: str) -> bool:
        dependencies = set(self._plan.nodes[address].depends_on) | self._extra_dependencies[address]
        return all(self.records[target].state == NodeState.SUCCEEDED for target in dependencies)

    def _schedule(self, pool: ThreadPoolExecutor) -> None:
        limit = self.context.settings.max_concurrency
        restart = True
        while restart and not self._halted:
            restart = False
            for address in list(self._pending):
                if len(self._in_flight) >= limit:
                    return
                if not self._ready(address):
                    continue
                self._pending.remove(address)
                plan_node = self._plan.nodes[address]
                if plan_node.inner is not None:
                    self._complete_module(plan_node)
                    restart = True
                    break
                self._dispatch(pool, plan_node)
                if self._halted:
                    return

    def _dispatch(self, pool: ThreadPoolExecutor, plan_node: "PlanNode") -> None:
        record = self.records[plan_node.address]
        try:
            self.instantiator.bind(plan_node.frame)
        except StackDeployError as e:
            self._fail(record, e)
            return
        logger.debug("Dispatching %s", plan_node.address)
        self._in_flight[pool.submit(self._run_node, plan_node)] = plan_node.address

    def _collect(self, future: Future) -> None:
        address = self._in_flight.pop(future)
        record = self.records[address]
        missing = future.result()
        if missing is None:
            if record.state == NodeState.FAILED:
                self._halted = True
            return

        known = missing in self.records
        if not known or missing == address:
            self._fail(record, TemplateError(f"'{address}' references '{missing}' which can never be deployed first"))
            return
        logger.debug("%s is waiting for %s", address, missing)
        self._extra_dependencies[address].add(missing)
        order = self._plan.order
        self._pending.append(address)
        self._pending.sort(key=order.index)

    def _complete_module(self, plan_node: "PlanNode") -> None:
        record = self.records[plan_node.address]
        record.started_at = time.monotonic()
        try:
            record.outputs = self.instantiator.outputs(plan_node.inner)
        except StackDeployError as e:
            self._fail(record, e)
            return
        self._transition(record, NodeState.SUCCEEDED)
        record.finished_at = time.monotonic()
        logger.info("Module %s succeeded", plan_node.address)

    def _transition(self, record: NodeRecord, state: NodeState) -> None:
        record.state = state
        if self.listener is not None:
            self.listener(record)

    def _fail(self, record: NodeRecord, error: Exception) -> None:
        self._record_failure(record, error)
        self._halted = True

    def _run_node(self, plan_node: "PlanNode") -> Optional[str]:
        """Resolve and materialize one resource.

        Returns:
            Optional[str]: Address of a node that must succeed first when the
                resource was not ready yet, otherwise None.
        """
        record = self.records[plan_node.address]
        if record.started_at is None:
            record.started_at = time.monotonic()
        self._transition(record, NodeState.RESOLVING)
        context = FrameContext(plan_node.frame, self.context)
        try:
            payload = self.context.evaluator.evaluate(plan_node.node.properties, context)
            request = self._request(plan_node, payload, context)
        except UnresolvedReferenceError as e:
            record.started_at = None
            self._transition(record, NodeState.PENDING)
            return e.address
        except StackDeployError as e:
            self._record_failure(record, e)
            return None
        except Exception as e:
            logger.exception("Unexpected error resolving %s", plan_node.address)
            self._record_failure(record, e)
            return None

        record.name = request.name
        record.resource_id = request.resource_id
        self._transition(record, NodeState.MATERIALIZING)
        try:
            result, no_op = self._materialize(request, record)
        except ProvisioningError as e:
            self._record_failure(record, e)
            return None
        except Exception as e:
            logger.exception("Unexpected error materializing %s", plan_node.address)
            self._record_failure(record, e)
            return None

        record.resource_id = result.resource_id or request.resource_id
        record.properties = result.properties
        record.no_op = no_op
        record.finished_at = time.monotonic()
        self._transition(record, NodeState.SUCCEEDED)
        logger.info(
            "%s %s (attempts: %d)",
            plan_node.address, "unchanged" if no_op else "succeeded", record.attempts,
        )
        return None

    def _record_failure(self, record: NodeRecord, error: Exception) -> None:
        record.error = str(error)
        record.error_type = type(error).__name__
        record.finished_at = time.monotonic()
        self._transition(record, NodeState.FAILED)
        logger.error("%s failed: %s", record.address, error)

    def _request(self, plan_node: "PlanNode", payload: Dict[str, Any], context: FrameContext) -> ProvisioningRequest:
        resource: Resource = plan_node.node
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            raise TypeMismatchError(f"Resource '{resource.name}' name must be a non-empty string, got {type_name(name)}")

        scope = plan_node.frame.scope
        try:
            if resource.parent is not None:
                parent = context.symbol(resource.parent)
                resource_id = child_resource_id(parent["id"], resource.type, name)
            elif resource.scope is not None:
                target = context.symbol(resource.scope)
                target_node = plan_node.frame.graph.get_by_name(resource.scope)
                if isinstance(target_node, Resource) and target_node.is_resource_group:
                    resource_id = build_resource_id(resource.type, name.split("/"), scope.with_resource_group(target["name"]))
                else:
                    resource_id = build_resource_id(resource.type, name.split("/"), scope, scope_id=target["id"])
            else:
                resource_id = build_resource_id(resource.type, name.split("/"), scope)
        except ValueError as e:
            raise TemplateError(f"Resource '{resource.name}': {e}") from e

        return ProvisioningRequest(
            resource_type=resource.type,
            api_version=resource.api_version,
            name=name,
            resource_id=resource_id,
            payload=payload,
            address=plan_node.address,
        )

    def _materialize(self, request: ProvisioningRequest, record: NodeRecord) -> Tuple[ProvisioningResult, bool]:
        settings = self.context.settings
        client = self.context.client

        def attempt() -> Tuple[ProvisioningResult, bool]:
            record.attempts += 1
            record.retries = record.attempts - 1
            existing = client.get(request)
            if existing is not None and payload_matches(request.payload, existing.properties):
                return existing, True
            return client.create_or_update(request), False

        def before_sleep(retry_state) -> None:
            logger.warning(
                "Transient error for %s (attempt %d of %d), retrying in %.1fs: %s",
                request.address,
                retry_state.attempt_number,
                settings.max_retries + 1,
                retry_state.next_action.sleep,
                retry_state.outcome.exception(),
            )

        retrying = Retrying(
            retry=retry_if_exception_type(TransientProvisioningError),
            stop=stop_after_attempt(settings.max_retries + 1),
            wait=wait_exponential(multiplier=settings.backoff_base_seconds, max=settings.backoff_max_seconds),
            sleep=self.sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(attempt)
