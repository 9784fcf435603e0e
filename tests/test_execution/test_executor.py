"""Tests for the deployment executor."""
from functools import partial

import pytest

from stackdeploy.config import DeploymentScope, EngineSettings
from stackdeploy.errors import PermanentProvisioningError, TransientProvisioningError
from stackdeploy.execution.context import DeploymentContext
from stackdeploy.execution.executor import DeploymentExecutor, payload_matches
from stackdeploy.execution.models import NodeState
from stackdeploy.execution.modules import ModuleInstantiator
from stackdeploy.expressions.parser import parse_template_value
from stackdeploy.provisioning.memory import InMemoryProvisioningClient
from stackdeploy.template.loader import TemplateLoader

SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"
SCOPE = DeploymentScope(subscription_id=SUBSCRIPTION, location="westeurope", resource_group="rg-app", deployment_name="main")

CHAIN = """
resources:
  a:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    location: westeurope
  b:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    dependsOn: [a]
  c:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    dependsOn: [b]
"""

TWO_CHAINS = """
resources:
  a:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
  b:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    dependsOn: [a]
  x:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
  y:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    dependsOn: [x]
"""


def _deploy(tmp_path, yaml_content, client, params=None, listener=None, sleeps=None, **settings):
    template_path = tmp_path / "main.yaml"
    template_path.write_text(yaml_content)
    graph = TemplateLoader().load(str(template_path))

    run = DeploymentContext(client, SCOPE, EngineSettings(**settings))
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    factory = partial(DeploymentExecutor, sleep=sleep, listener=listener)
    return ModuleInstantiator(run, executor_factory=factory).instantiate(graph, params), run


def _overlaps(first, second):
    return first[0] < second[1] and second[0] < first[1]


def test_chain_succeeds_in_order(tmp_path):
    client = InMemoryProvisioningClient()
    report, _ = _deploy(tmp_path, CHAIN, client)

    assert report.success
    assert report.succeeded == ["a", "b", "c"]
    created = [resource_id.rsplit("/", 1)[-1] for call, resource_id in client.calls if call == "create_or_update"]
    assert created == ["a", "b", "c"]


def test_failure_halts_dependents(tmp_path):
    """Test that a permanent failure leaves later nodes never attempted."""
    client = InMemoryProvisioningClient()
    client.fail("b", PermanentProvisioningError("SKU not available", code="SkuNotAvailable", status_code=400))

    report, _ = _deploy(tmp_path, CHAIN, client)

    assert not report.success
    assert report.state_of("a") == NodeState.SUCCEEDED
    assert report.state_of("b") == NodeState.FAILED
    assert report.state_of("c") == NodeState.NEVER_ATTEMPTED
    assert report.records["b"].attempts == 1
    assert report.records["b"].error_type == "PermanentProvisioningError"
    assert "SKU not available" in report.records["b"].error


def test_transient_errors_are_retried(tmp_path):
    client = InMemoryProvisioningClient()
    client.fail("a", TransientProvisioningError("throttled", status_code=429), TransientProvisioningError("busy"))
    sleeps = []

    report, _ = _deploy(tmp_path, CHAIN, client, sleeps=sleeps, max_retries=3)

    assert report.success
    assert report.records["a"].retries == 2
    assert report.records["a"].attempts == 3
    assert report.records["b"].retries == 0
    assert sleeps == [1, 2]


def test_backoff_is_capped(tmp_path):
    client = InMemoryProvisioningClient()
    client.fail("a", *[TransientProvisioningError("throttled") for _ in range(3)])
    sleeps = []

    _deploy(tmp_path, CHAIN, client, sleeps=sleeps, backoff_base_seconds=2, backoff_max_seconds=5)

    assert sleeps == [2, 4, 5]


def test_retries_are_exhausted(tmp_path):
    client = InMemoryProvisioningClient()
    client.fail("a", *[TransientProvisioningError("throttled") for _ in range(3)])

    report, _ = _deploy(tmp_path, CHAIN, client, max_retries=2)

    assert report.state_of("a") == NodeState.FAILED
    assert report.records["a"].attempts == 3
    assert report.records["a"].retries == 2
    assert report.never_attempted == ["b", "c"]


def test_evaluation_errors_are_not_retried(tmp_path):
    yaml_content = """
parameters:
  tags:
    type: object
resources:
  a:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    kind: "tags-${params.tags}"
"""
    client = InMemoryProvisioningClient()
    report, _ = _deploy(tmp_path, yaml_content, client, params={"tags": {"env": "dev"}})

    record = report.records["a"]
    assert record.state == NodeState.FAILED
    assert record.error_type == "TypeMismatchError"
    assert record.attempts == 0
    assert client.calls == []


def test_independent_nodes_overlap(tmp_path):
    """Test that independent chains run concurrently while each chain stays sequential."""
    client = InMemoryProvisioningClient(delay=0.2)
    report, _ = _deploy(tmp_path, TWO_CHAINS, client, max_concurrency=4)

    assert report.success
    windows = client.windows
    assert _overlaps(windows["a"], windows["x"])
    assert windows["b"][0] >= windows["a"][1]
    assert windows["y"][0] >= windows["x"][1]


def test_concurrency_limit(tmp_path):
    client = InMemoryProvisioningClient(delay=0.05)
    report, _ = _deploy(tmp_path, TWO_CHAINS, client, max_concurrency=1)

    assert report.success
    windows = sorted(client.windows.values())
    for earlier, later in zip(windows, windows[1:]):
        assert later[0] >= earlier[1]


def test_failure_lets_in_flight_nodes_finish(tmp_path):
    client = InMemoryProvisioningClient(delays={"x": 0.3})
    client.fail("a", PermanentProvisioningError("conflict"))

    report, _ = _deploy(tmp_path, TWO_CHAINS, client, max_concurrency=4)

    assert report.state_of("a") == NodeState.FAILED
    assert report.state_of("x") == NodeState.SUCCEEDED
    assert report.state_of("b") == NodeState.NEVER_ATTEMPTED
    assert report.state_of("y") == NodeState.NEVER_ATTEMPTED


def test_rerun_is_idempotent(tmp_path):
    """Test that a second deployment of unchanged resources issues no writes."""
    yaml_content = """
resources:
  rg:
    type: Microsoft.Resources/resourceGroups
    apiVersion: "2022-09-01"
    name: rg-app
    location: westeurope
  site:
    type: Microsoft.Web/sites
    apiVersion: "2022-03-01"
    name: "web-${uniqueString(rg.id)}"
    location: "${rg.location}"
    identity:
      type: SystemAssigned
    properties:
      httpsOnly: true
"""
    client = InMemoryProvisioningClient()
    first, _ = _deploy(tmp_path, yaml_content, client)
    writes = [call for call in client.calls if call[0] == "create_or_update"]

    second, _ = _deploy(tmp_path, yaml_content, client)

    assert first.success and second.success
    assert not any(record.no_op for record in first.records.values())
    assert all(record.no_op for record in second.records.values())
    assert [call for call in client.calls if call[0] == "create_or_update"] == writes
    assert second.records["site"].resource_id == first.records["site"].resource_id


def test_changed_payload_is_updated(tmp_path):
    client = InMemoryProvisioningClient()
    _deploy(tmp_path, CHAIN, client)

    report, _ = _deploy(tmp_path, CHAIN.replace("location: westeurope", "location: northeurope"), client)

    assert not report.records["a"].no_op
    assert report.records["b"].no_op
    assert client.resources[f"{SCOPE.resource_group_id}/providers/Microsoft.Storage/storageAccounts/a".lower()]["location"] == "northeurope"


def test_references_see_runtime_values(tmp_path):
    yaml_content = """
resources:
  site:
    type: Microsoft.Web/sites
    apiVersion: "2022-03-01"
    identity:
      type: SystemAssigned
  vault:
    type: Microsoft.KeyVault/vaults
    apiVersion: "2023-02-01"
    properties:
      accessPolicies:
        - objectId: "${site.identity.principalId}"
          state: "${site.properties.provisioningState}"
      siteId: "${site.id}"
outputs:
  principalId: "${site.identity.principalId}"
"""
    client = InMemoryProvisioningClient()
    report, _ = _deploy(tmp_path, yaml_content, client)

    assert report.success
    site = report.records["site"]
    vault = report.records["vault"].properties["properties"]
    assert vault["accessPolicies"][0] == {"objectId": site.properties["identity"]["principalId"], "state": "Succeeded"}
    assert vault["siteId"] == f"{SCOPE.resource_group_id}/providers/Microsoft.Web/sites/site"
    assert report.outputs == {"principalId": site.properties["identity"]["principalId"]}


REFERENCE = """
resources:
  a:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
  b:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    tags:
      source: "${a.id}"
"""


def _execute_plan(tmp_path, client, rewire):
    """Plan REFERENCE, let ``rewire`` edit the plan, then run it recording every transition."""
    template_path = tmp_path / "main.yaml"
    template_path.write_text(REFERENCE)
    graph = TemplateLoader().load(str(template_path))

    run = DeploymentContext(client, SCOPE)
    instantiator = ModuleInstantiator(run)
    plan = instantiator.plan(graph)
    rewire(plan)
    instantiator.bind(plan.root)

    transitions = []
    executor = DeploymentExecutor(run, instantiator, listener=lambda record: transitions.append((record.address, record.state)))
    return executor.execute(plan), transitions


def test_not_ready_node_is_requeued(tmp_path):
    """Test that a node reaching an unfinished reference waits for it and then succeeds."""
    client = InMemoryProvisioningClient(delays={"a": 0.2})

    def drop_dependency(plan):
        plan.nodes["b"].depends_on = []

    report, transitions = _execute_plan(tmp_path, client, drop_dependency)

    assert report.success
    b_states = [state for address, state in transitions if address == "b"]
    assert b_states[:2] == [NodeState.RESOLVING, NodeState.PENDING]
    assert b_states[-1] == NodeState.SUCCEEDED
    assert client.windows["b"][0] >= client.windows["a"][1]
    assert report.records["b"].properties["tags"]["source"] == report.records["a"].resource_id
    assert report.records["b"].started_at >= client.windows["a"][1]


def test_self_reference_fails(tmp_path):
    client = InMemoryProvisioningClient()

    def reference_self(plan):
        node = plan.nodes["b"]
        node.depends_on = []
        node.node.properties = parse_template_value({"name": "b", "tags": {"self": "${b.id}"}})

    report, transitions = _execute_plan(tmp_path, client, reference_self)

    assert not report.success
    record = report.records["b"]
    assert record.state == NodeState.FAILED
    assert record.error_type == "TemplateError"
    assert record.attempts == 0
    assert ("b", NodeState.PENDING) in transitions
    assert [resource_id for call, resource_id in client.calls if call == "create_or_update" and resource_id.endswith("/b")] == []


def test_parent_and_extension_scope_ids(tmp_path):
    yaml_content = """
resources:
  vnet:
    type: Microsoft.Network/virtualNetworks
    apiVersion: "2023-04-01"
  subnet:
    type: Microsoft.Network/virtualNetworks/subnets
    apiVersion: "2023-04-01"
    parent: vnet
    name: default
  lock:
    type: Microsoft.Authorization/locks
    apiVersion: "2020-05-01"
    scope: vnet
    name: no-delete
    properties:
      level: CanNotDelete
"""
    report, _ = _deploy(tmp_path, yaml_content, InMemoryProvisioningClient())

    vnet_id = f"{SCOPE.resource_group_id}/providers/Microsoft.Network/virtualNetworks/vnet"
    assert report.records["vnet"].resource_id == vnet_id
    assert report.records["subnet"].resource_id == f"{vnet_id}/subnets/default"
    assert report.records["lock"].resource_id == f"{vnet_id}/providers/Microsoft.Authorization/locks/no-delete"


def test_cancellation_stops_scheduling(tmp_path):
    client = InMemoryProvisioningClient()
    runs = []

    def cancel_after_first(record):
        if record.state == NodeState.SUCCEEDED:
            runs[0].cancel()

    template_path = tmp_path / "main.yaml"
    template_path.write_text(CHAIN)
    graph = TemplateLoader().load(str(template_path))
    run = DeploymentContext(client, SCOPE)
    runs.append(run)
    factory = partial(DeploymentExecutor, listener=cancel_after_first)
    report = ModuleInstantiator(run, executor_factory=factory).instantiate(graph)

    assert report.cancelled
    assert not report.success
    assert report.state_of("a") == NodeState.SUCCEEDED
    assert report.never_attempted == ["b", "c"]


def test_report_serialization(tmp_path):
    client = InMemoryProvisioningClient()
    client.fail("b", PermanentProvisioningError("bad request"))
    report, _ = _deploy(tmp_path, CHAIN, client)

    output_path = tmp_path / "report.json"
    report.save(str(output_path))
    data = report.to_dict()
    assert output_path.exists()
    assert data["success"] is False
    assert data["failed"] == ["b"]
    assert data["neverAttempted"] == ["c"]
    assert data["nodes"][1]["error"] == {"type": "PermanentProvisioningError", "message": "bad request"}


@pytest.mark.parametrize("desired, actual, expected", [
    ({"a": 1}, {"a": 1, "id": "x"}, True),
    ({"a": {"b": 1}}, {"a": {"b": 1, "c": 2}}, True),
    ({"a": 1}, {"a": 2}, False),
    ({"a": 1}, {}, False),
    ({"a": [1, 2]}, {"a": [1, 2, 3]}, False),
])
def test_payload_matches(desired, actual, expected):
    assert payload_matches(desired, actual) is expected
