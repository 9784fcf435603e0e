"""Built-in template functions.

Every function receives the evaluation context followed by its already
evaluated arguments. ``if`` and ``coalesce`` are special forms handled by
the evaluator because their arguments are evaluated lazily.
"""
import base64
import hashlib
import json
import re
from typing import Any, Callable, Dict, List, Optional

from ..config import CLOUD_ENVIRONMENTS, DeploymentScope
from ..errors import ExpressionError, TypeMismatchError
from ..provisioning.ids import build_resource_id

FunctionImpl = Callable[..., Any]

LAZY_FUNCTIONS = frozenset({"if", "coalesce"})


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def to_text(value: Any, where: str) -> str:
    """Convert a scalar to its interpolated form; containers are rejected."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeMismatchError(f"Cannot concatenate a value of type {type_name(value)} in {where}")


def _require(value: Any, expected: type, function: str) -> Any:
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise TypeMismatchError(f"{function}() expects {expected.__name__}, got {type_name(value)}")
    return value


def _scope(context) -> DeploymentScope:
    scope = getattr(context, "scope", None)
    if scope is None:
        raise ExpressionError("No deployment scope is available in this context")
    return scope


class FunctionRegistry:
    """Name to implementation mapping for template functions."""

    def __init__(self, functions: Optional[Dict[str, FunctionImpl]] = None):
        self._functions: Dict[str, FunctionImpl] = dict(functions or {})

    def register(self, name: str):
        def decorator(fn: FunctionImpl) -> FunctionImpl:
            self._functions[name] = fn
            return fn
        return decorator

    def get(self, name: str) -> FunctionImpl:
        try:
            return self._functions[name]
        except KeyError:
            raise ExpressionError(f"Unknown function '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._functions or name in LAZY_FUNCTIONS

    def copy(self) -> "FunctionRegistry":
        return FunctionRegistry(self._functions)


_BUILTINS = FunctionRegistry()


def default_functions() -> FunctionRegistry:
    return _BUILTINS.copy()


@_BUILTINS.register("concat")
def _concat(context, *args):
    if args and all(isinstance(arg, list) for arg in args):
        return [item for arg in args for item in arg]
    return "".join(to_text(arg, "concat()") for arg in args)


@_BUILTINS.register("format")
def _format(context, template, *args):
    _require(template, str, "format")

    def substitute(match: re.Match) -> str:
        index = int(match.group(1))
        if index >= len(args):
            raise ExpressionError(f"format() placeholder {{{index}}} has no argument")
        return to_text(args[index], "format()")

    return re.sub(r"\{(\d+)\}", substitute, template)


@_BUILTINS.register("uniqueString")
def _unique_string(context, *args):
    if not args:
        raise ExpressionError("uniqueString() requires at least one argument")
    for arg in args:
        _require(arg, str, "uniqueString")
    digest = hashlib.sha256("-".join(args).encode("utf-8")).digest()
    return base64.b32encode(digest).decode("ascii").lower()[:13]


@_BUILTINS.register("toLower")
def _to_lower(context, value):
    return _require(value, str, "toLower").lower()


@_BUILTINS.register("toUpper")
def _to_upper(context, value):
    return _require(value, str, "toUpper").upper()


@_BUILTINS.register("replace")
def _replace(context, value, old, new):
    return _require(value, str, "replace").replace(_require(old, str, "replace"), _require(new, str, "replace"))


@_BUILTINS.register("substring")
def _substring(context, value, start, length=None):
    text = _require(value, str, "substring")
    start = _require(start, int, "substring")
    if length is None:
        return text[start:]
    return text[start:start + _require(length, int, "substring")]


@_BUILTINS.register("length")
def _length(context, value):
    if isinstance(value, (str, list, dict)):
        return len(value)
    raise TypeMismatchError(f"length() expects string, array or object, got {type_name(value)}")


@_BUILTINS.register("string")
def _string(context, value):
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    if value is None:
        return ""
    return to_text(value, "string()")


@_BUILTINS.register("int")
def _int(context, value):
    if isinstance(value, bool):
        raise TypeMismatchError("int() cannot convert bool")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise TypeMismatchError(f"int() cannot convert '{value}'") from None
    raise TypeMismatchError(f"int() cannot convert {type_name(value)}")


@_BUILTINS.register("bool")
def _bool(context, value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    if isinstance(value, int):
        return value != 0
    raise TypeMismatchError(f"bool() cannot convert {type_name(value)}")


@_BUILTINS.register("equals")
def _equals(context, left, right):
    return left == right


@_BUILTINS.register("empty")
def _empty(context, value):
    return value is None or value in ("", [], {})


@_BUILTINS.register("contains")
def _contains(context, container, item):
    if isinstance(container, str):
        return to_text(item, "contains()") in container
    if isinstance(container, (list, dict)):
        return item in container
    raise TypeMismatchError(f"contains() expects string, array or object, got {type_name(container)}")


@_BUILTINS.register("union")
def _union(context, *args):
    if args and all(isinstance(arg, dict) for arg in args):
        merged: Dict[str, Any] = {}
        for arg in args:
            merged.update(arg)
        return merged
    if args and all(isinstance(arg, list) for arg in args):
        result: List[Any] = []
        for arg in args:
            for item in arg:
                if item not in result:
                    result.append(item)
        return result
    raise TypeMismatchError("union() expects only objects or only arrays")


@_BUILTINS.register("createArray")
def _create_array(context, *args):
    return list(args)


@_BUILTINS.register("createObject")
def _create_object(context, *args):
    if len(args) % 2:
        raise ExpressionError("createObject() expects key/value pairs")
    return {_require(args[i], str, "createObject"): args[i + 1] for i in range(0, len(args), 2)}


@_BUILTINS.register("resourceId")
def _resource_id(context, resource_type, *names):
    _require(resource_type, str, "resourceId")
    try:
        return build_resource_id(resource_type, [to_text(name, "resourceId()") for name in names], _scope(context))
    except ValueError as e:
        raise ExpressionError(str(e)) from e


@_BUILTINS.register("subscription")
def _subscription(context):
    scope = _scope(context)
    return {
        "id": scope.subscription_resource_id,
        "subscriptionId": scope.subscription_id,
        "tenantId": scope.tenant_id,
    }


@_BUILTINS.register("resourceGroup")
def _resource_group(context):
    scope = _scope(context)
    if not scope.resource_group:
        raise ExpressionError("resourceGroup() is not available at subscription scope")
    return {"id": scope.resource_group_id, "name": scope.resource_group, "location": scope.location}


@_BUILTINS.register("deployment")
def _deployment(context):
    scope = _scope(context)
    return {"name": scope.deployment_name, "location": scope.location}


@_BUILTINS.register("environment")
def _environment(context):
    scope = _scope(context)
    try:
        return json.loads(json.dumps(CLOUD_ENVIRONMENTS[scope.cloud]))
    except KeyError:
        raise ExpressionError(f"Unknown cloud environment '{scope.cloud}'") from None
