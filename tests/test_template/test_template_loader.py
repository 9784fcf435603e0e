"""Tests for template parsing and graph loading."""
import pytest
from pydantic import ValidationError

from stackdeploy.errors import (
    CyclicDependencyError,
    DuplicateNameError,
    MissingParameterError,
    TemplateError,
    UnknownSymbolError,
)
from stackdeploy.expressions.nodes import Expression
from stackdeploy.graph.models import Module, ParameterType, Resource
from stackdeploy.template.loader import TemplateLoader
from stackdeploy.template.parser import TemplateParser


def test_valid_template(tmp_path):
    """Test loading a template with parameters, variables and resources."""
    yaml_content = """
    metadata:
      name: web
    parameters:
      prefix:
        type: string
        default: app
      replicas:
        type: int
    variables:
      storageName: "${params.prefix}store"
    resources:
      storage:
        type: Microsoft.Storage/storageAccounts
        apiVersion: "2023-01-01"
        name: "${vars.storageName}"
        location: westus
        sku:
          name: Standard_LRS
    outputs:
      storageId: "${storage.id}"
    deployment:
      maxConcurrency: 2
    """
    template_path = tmp_path / "main.yaml"
    template_path.write_text(yaml_content)

    graph = TemplateLoader().load(str(template_path))
    assert len(graph) == 1
    assert graph.parameters["prefix"].has_default
    assert graph.parameters["replicas"].type == ParameterType.INT
    assert not graph.parameters["replicas"].has_default
    assert graph.settings == {"max_concurrency": 2}

    storage = graph.get_by_name("storage")
    assert isinstance(storage, Resource)
    assert storage.api_version == "2023-01-01"
    assert storage.properties["location"] == "westus"
    assert storage.properties["sku"] == {"name": "Standard_LRS"}
    assert isinstance(storage.properties["name"], Expression)
    assert "type" not in storage.properties


def test_name_defaults_to_symbol(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
    resources:
      rg:
        type: Microsoft.Resources/resourceGroups
        apiVersion: "2022-09-01"
        location: eastus
    """)

    graph = TemplateLoader().load(str(template_path))
    assert graph.get_by_name("rg").properties["name"] == "rg"


def test_duplicate_resource_name():
    """Test that a repeated symbolic name is rejected instead of overwritten."""
    yaml_content = """
resources:
  storage:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
  storage:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
"""
    with pytest.raises(DuplicateNameError) as exc_info:
        TemplateParser.loads(yaml_content)
    assert exc_info.value.name == "storage"


def test_unknown_top_level_section():
    with pytest.raises(ValidationError):
        TemplateParser.loads("services: []")


def test_resource_requires_type():
    with pytest.raises(ValidationError):
        TemplateParser.loads("""
resources:
  storage:
    apiVersion: "2023-01-01"
""")


def test_nonexistent_file():
    """Test loading a nonexistent file."""
    with pytest.raises(FileNotFoundError):
        TemplateLoader().load("nonexistent.yaml")


def test_unknown_symbol_reference(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
resources:
  app:
    type: Microsoft.Web/sites
    apiVersion: "2022-03-01"
    serverFarmId: "${plan.id}"
""")

    with pytest.raises(UnknownSymbolError) as exc_info:
        TemplateLoader().load(str(template_path))
    assert exc_info.value.symbol == "plan"
    assert exc_info.value.referrer == "app"


def test_unknown_explicit_dependency(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
resources:
  app:
    type: Microsoft.Web/sites
    apiVersion: "2022-03-01"
    dependsOn: [plan]
""")

    with pytest.raises(UnknownSymbolError):
        TemplateLoader().load(str(template_path))


def test_reserved_symbol_name(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
resources:
  params:
    type: Microsoft.Web/sites
    apiVersion: "2022-03-01"
""")

    with pytest.raises(TemplateError):
        TemplateLoader().load(str(template_path))


def test_parameter_default_cannot_reference_resource(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
parameters:
  name:
    default: "${storage.name}"
resources:
  storage:
    type: Microsoft.Storage/storageAccounts
    apiVersion: "2023-01-01"
""")

    with pytest.raises(TemplateError):
        TemplateLoader().load(str(template_path))


def test_module_loading(tmp_path):
    """Test that module sources are resolved relative to the including template."""
    modules_dir = tmp_path / "modules"
    modules_dir.mkdir()
    (modules_dir / "network.yaml").write_text("""
parameters:
  prefix: {}
resources:
  vnet:
    type: Microsoft.Network/virtualNetworks
    apiVersion: "2023-04-01"
    name: "${params.prefix}-vnet"
outputs:
  vnetId: "${vnet.id}"
""")
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
modules:
  network:
    source: modules/network.yaml
    params:
      prefix: demo
  secondNetwork:
    source: modules/network.yaml
    params:
      prefix: other
""")

    graph = TemplateLoader().load(str(template_path))
    network = graph.get_by_name("network")
    assert isinstance(network, Module)
    assert network.bindings == {"prefix": "demo"}
    assert "vnet" in network.graph
    # Both instances share the parsed document
    assert graph.get_by_name("secondNetwork").graph is network.graph


def test_module_binds_unknown_parameter(tmp_path):
    (tmp_path / "child.yaml").write_text("parameters:\n  prefix: {}\n")
    template_path = tmp_path / "main.yaml"
    template_path.write_text("""
modules:
  child:
    source: child.yaml
    params:
      suffix: x
""")

    with pytest.raises(TemplateError, match="suffix"):
        TemplateLoader().load(str(template_path))


def test_module_source_cycle(tmp_path):
    (tmp_path / "a.yaml").write_text("modules:\n  b:\n    source: b.yaml\n")
    (tmp_path / "b.yaml").write_text("modules:\n  a:\n    source: a.yaml\n")

    with pytest.raises(CyclicDependencyError):
        TemplateLoader().load(str(tmp_path / "a.yaml"))


def test_missing_module_source(tmp_path):
    template_path = tmp_path / "main.yaml"
    template_path.write_text("modules:\n  child:\n    source: missing.yaml\n")

    with pytest.raises(FileNotFoundError):
        TemplateLoader().load(str(template_path))


def test_module_missing_required_parameter(tmp_path):
    (tmp_path / "child.yaml").write_text("parameters:\n  prefix: {}\n")
    template_path = tmp_path / "main.yaml"
    template_path.write_text("modules:\n  child:\n    source: child.yaml\n")

    with pytest.raises(MissingParameterError) as exc_info:
        TemplateLoader().load(str(template_path))
    assert exc_info.value.name == "prefix"
