"""Builds resource graphs from template documents, following module sources."""
import logging
import re
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from ..errors import CyclicDependencyError, MissingParameterError, TemplateError
from ..expressions.parser import parse_template_value
from ..graph.analysis import RESERVED_ROOTS, collect_edges
from ..graph.graph import ResourceGraph
from ..graph.models import Module, Output, Parameter, Resource
from .parser import TemplateParser
from .schema import TemplateDocument

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_symbol(name: str, section: str) -> None:
    if not SYMBOL_PATTERN.match(name) or name in RESERVED_ROOTS:
        raise TemplateError(f"Invalid symbolic name '{name}' in {section}")


def build_graph(
    document: TemplateDocument,
    source: Optional[str] = None,
    load_module: Optional[Callable[[str], ResourceGraph]] = None,
) -> ResourceGraph:
    """Convert a validated document into a ResourceGraph.

    Args:
        document: Validated template document.
        source: Label used in error messages, usually the file path.
        load_module: Callback returning the graph for a module source path.

    Returns:
        ResourceGraph: Graph with every placeholder pre-parsed.
    """
    graph = ResourceGraph(source)
    if document.deployment is not None:
        graph.settings = document.deployment.model_dump(exclude_unset=True)

    for name, spec in document.parameters.items():
        _check_symbol(name, "parameters")
        graph.add_parameter(Parameter(
            name=name,
            type=spec.type,
            default_value=parse_template_value(spec.default),
            has_default=spec.has_default,
            allowed_values=spec.allowed_values,
            secure=spec.secure,
            description=spec.description,
        ))

    for name, value in document.variables.items():
        _check_symbol(name, "variables")
        graph.variables[name] = parse_template_value(value)

    for name, spec in document.resources.items():
        _check_symbol(name, "resources")
        body = spec.body
        body.setdefault("name", name)
        graph.add_resource(Resource(
            name=name,
            type=spec.type,
            api_version=spec.api_version,
            properties=parse_template_value(body),
            depends_on=list(spec.depends_on),
            scope=spec.scope,
            parent=spec.parent,
        ))

    for name, spec in document.modules.items():
        _check_symbol(name, "modules")
        if load_module is None:
            raise TemplateError(f"Module '{name}' cannot be loaded without a module loader")
        child = load_module(spec.source)
        unknown = sorted(set(spec.params) - set(child.parameters))
        if unknown:
            raise TemplateError(f"Module '{name}' binds unknown parameter '{unknown[0]}' of {spec.source}")
        for parameter in child.parameters.values():
            if not parameter.has_default and parameter.name not in spec.params:
                raise MissingParameterError(parameter.name, f"module '{name}'")
        graph.add_module(Module(
            name=name,
            source=spec.source,
            graph=child,
            bindings=parse_template_value(dict(spec.params)),
            depends_on=list(spec.depends_on),
            scope=spec.scope,
            resource_group=parse_template_value(spec.resource_group),
        ))

    for name, value in document.outputs.items():
        graph.add_output(Output(name, parse_template_value(value)))

    return graph


class TemplateLoader:
    """Loads a template file and every module it references.

    A module source included by several documents is parsed once; each
    instantiation still gets its own parameter namespace at run time.
    """

    def __init__(self):
        self._cache: Dict[Path, ResourceGraph] = {}

    def load(self, file_path: str) -> ResourceGraph:
        """Load a template and its modules.

        Args:
            file_path: Path to the root template.

        Returns:
            ResourceGraph: Root graph.

        Raises:
            FileNotFoundError: If a template or module source is missing.
            TemplateError: If any document is structurally invalid.
        """
        return self._load(Path(file_path).resolve(), ())

    def _load(self, path: Path, stack: Tuple[Path, ...]) -> ResourceGraph:
        if path in stack:
            raise CyclicDependencyError(str(item) for item in stack[stack.index(path):])
        if path in self._cache:
            return self._cache[path]

        logger.debug("Loading template %s", path)
        document = TemplateParser.load(str(path))
        graph = build_graph(
            document,
            source=str(path),
            load_module=lambda module_source: self._load((path.parent / module_source).resolve(), stack + (path,)),
        )
        collect_edges(graph)
        self._cache[path] = graph
        return graph
