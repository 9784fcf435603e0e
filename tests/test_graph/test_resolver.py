"""Tests for dependency analysis and ordering."""
import pytest

from stackdeploy.errors import CyclicDependencyError, DuplicateNameError, UnknownSymbolError
from stackdeploy.graph.analysis import collect_edges, find_references
from stackdeploy.graph.graph import ResourceGraph
from stackdeploy.graph.models import DependencyEdge, EdgeKind, Parameter, Resource
from stackdeploy.graph.resolver import DependencyResolver, cycle_members
from stackdeploy.expressions.parser import parse_template_value
from stackdeploy.template.loader import TemplateLoader


def _resource(name, depends_on=None, **properties):
    return Resource(
        name=name,
        type="Microsoft.Storage/storageAccounts",
        api_version="2023-01-01",
        properties=parse_template_value(dict(properties, name=name)),
        depends_on=depends_on or [],
    )


def _graph(*resources):
    graph = ResourceGraph("test")
    for resource in resources:
        graph.add_resource(resource)
    return graph


def _names(nodes):
    return [node.name for node in nodes]


def test_duplicate_node_name():
    graph = _graph(_resource("a"))
    with pytest.raises(DuplicateNameError):
        graph.add_resource(_resource("a"))


def test_unknown_name_lookup():
    with pytest.raises(UnknownSymbolError):
        _graph().get_by_name("missing")


def test_all_nodes_can_be_iterated_twice():
    graph = _graph(_resource("a"), _resource("b"))
    nodes = graph.all_nodes()
    assert _names(nodes) == _names(nodes) == ["a", "b"]


def test_every_node_follows_its_dependencies():
    """Test that the order places each node after everything it depends on."""
    graph = _graph(
        _resource("app", ["plan", "insights"]),
        _resource("plan", ["rg"]),
        _resource("insights", ["workspace"]),
        _resource("workspace", ["rg"]),
        _resource("rg"),
    )

    order = _names(DependencyResolver().resolve(graph))
    assert sorted(order) == sorted(_names(graph.all_nodes()))
    for edge in collect_edges(graph):
        assert order.index(edge.target) < order.index(edge.source)


def test_declaration_order_breaks_ties():
    graph = _graph(_resource("c"), _resource("a"), _resource("b", ["c"]))
    assert _names(DependencyResolver().resolve(graph)) == ["c", "a", "b"]


def test_empty_graph():
    assert DependencyResolver().resolve(_graph()) == []


def test_implicit_edges_from_references():
    graph = _graph(
        _resource("plan"),
        _resource("app", serverFarmId="${plan.id}", tags={"plan": "${toLower(plan.name)}"}),
    )

    edges = collect_edges(graph)
    assert edges == [DependencyEdge("app", "plan", EdgeKind.IMPLICIT)]


def test_explicit_edge_kind_wins_over_implicit():
    graph = _graph(_resource("plan"), _resource("app", ["plan"], serverFarmId="${plan.id}"))
    assert collect_edges(graph) == [DependencyEdge("app", "plan", EdgeKind.EXPLICIT)]


def test_references_through_variables():
    graph = _graph(_resource("plan"), _resource("app", kind="${vars.planKind}"))
    graph.variables["planKind"] = parse_template_value("${vars.planId}")
    graph.variables["planId"] = parse_template_value("${plan.id}")

    assert DependencyEdge("app", "plan", EdgeKind.IMPLICIT) in collect_edges(graph)


def test_variable_cycle():
    graph = _graph()
    graph.variables["a"] = parse_template_value("${vars.b}")
    graph.variables["b"] = parse_template_value("${vars.a}")

    with pytest.raises(CyclicDependencyError) as exc_info:
        collect_edges(graph)
    assert set(exc_info.value.cycle) == {"vars.a", "vars.b"}


def test_unknown_parameter_reference():
    graph = _graph(_resource("a", sku="${params.sku}"))
    with pytest.raises(UnknownSymbolError):
        collect_edges(graph)

    graph.add_parameter(Parameter("sku"))
    assert collect_edges(graph) == []


def test_find_references():
    refs = find_references(parse_template_value({
        "a": "${params.x}-${vars['y']}",
        "b": ["${concat(plan.id, params[vars.k])}"],
    }))
    assert refs.symbols == {"plan"}
    assert refs.parameters == {"x"}
    assert refs.variables == {"y", "k"}
    assert refs.all_parameters


def test_cycle_reports_members():
    """Test that a cycle error names exactly the nodes on the cycle."""
    graph = _graph(
        _resource("rg"),
        _resource("a", ["rg", "c"]),
        _resource("b", ["a"]),
        _resource("c", ["b"]),
        _resource("d", ["c"]),
    )

    with pytest.raises(CyclicDependencyError) as exc_info:
        DependencyResolver().resolve(graph)
    assert exc_info.value.cycle == ["a", "b", "c"]


def test_self_reference_is_a_cycle():
    graph = _graph(_resource("a", tags={"self": "${a.id}"}))
    with pytest.raises(CyclicDependencyError) as exc_info:
        DependencyResolver().resolve(graph)
    assert exc_info.value.cycle == ["a"]


def test_cycle_members_with_two_components():
    edges = [
        DependencyEdge("a", "b"),
        DependencyEdge("b", "a"),
        DependencyEdge("c", "d"),
        DependencyEdge("d", "c"),
        DependencyEdge("e", "a"),
    ]
    assert cycle_members(["a", "b", "c", "d", "e"], edges) == ["a", "b", "c", "d"]


def test_order_rejects_unknown_endpoint():
    with pytest.raises(UnknownSymbolError):
        DependencyResolver.order(["a"], [DependencyEdge("a", "b")])


def test_cycle_detected_in_loaded_template(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
resources:
  a:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    tags:
      peer: "${b.name}"
  b:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
    tags:
      peer: "${a.name}"
""")

    graph = TemplateLoader().load(str(template_path))
    with pytest.raises(CyclicDependencyError) as exc_info:
        DependencyResolver().resolve(graph)
    assert exc_info.value.cycle == ["a", "b"]
