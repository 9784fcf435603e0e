"""Expression evaluation."""
from typing import Any, Dict, Mapping, Optional

from ..config import DeploymentScope
from ..errors import ExpressionError, MissingParameterError, TypeMismatchError, UnresolvedReferenceError
from .functions import FunctionRegistry, default_functions, to_text, type_name
from .nodes import Call, Expression, Index, Literal, Member, Name, Node

PARAMS_ROOT = "params"
VARS_ROOT = "vars"


class EvaluationContext:
    """Values visible to an expression.

    ``variables`` holds raw (unevaluated) values; ``symbols`` maps symbolic
    names to the reference view of nodes that already succeeded. Subclasses
    override the lookups to read live deployment state.
    """

    def __init__(
        self,
        parameters: Optional[Mapping[str, Any]] = None,
        variables: Optional[Mapping[str, Any]] = None,
        symbols: Optional[Mapping[str, Any]] = None,
        scope: Optional[DeploymentScope] = None,
    ):
        self.parameters = dict(parameters or {})
        self.variables = dict(variables or {})
        self.symbols = dict(symbols or {})
        self.scope = scope

    def parameter(self, name: str) -> Any:
        try:
            return self.parameters[name]
        except KeyError:
            raise MissingParameterError(name) from None

    def all_parameters(self) -> Dict[str, Any]:
        return dict(self.parameters)

    def variable(self, name: str) -> Any:
        try:
            return self.variables[name]
        except KeyError:
            raise ExpressionError(f"Unknown variable '{name}'") from None

    def symbol(self, name: str) -> Any:
        try:
            return self.symbols[name]
        except KeyError:
            raise UnresolvedReferenceError(name) from None


class ExpressionEvaluator:
    """Turns raw template values into concrete values."""

    def __init__(self, functions: Optional[FunctionRegistry] = None):
        self.functions = functions or default_functions()

    def evaluate(self, value: Any, context: EvaluationContext) -> Any:
        """Evaluate a raw value, descending into objects and arrays.

        Raises:
            UnresolvedReferenceError: If a referenced node has not succeeded yet.
            TypeMismatchError: If an operation receives an incompatible type.
            ExpressionError: If a member, index or function does not exist.
        """
        if isinstance(value, Expression):
            return self._expression(value, context)
        if isinstance(value, dict):
            return {key: self.evaluate(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.evaluate(item, context) for item in value]
        return value

    def _expression(self, expression: Expression, context: EvaluationContext) -> Any:
        if not expression.is_interpolation:
            return self._node(expression.parts[0], context)
        pieces = []
        for part in expression.parts:
            if isinstance(part, str):
                pieces.append(part)
            else:
                pieces.append(to_text(self._node(part, context), f"'{expression.source}'"))
        return "".join(pieces)

    def _variable(self, name: str, context: EvaluationContext) -> Any:
        return self.evaluate(context.variable(name), context)

    def _node(self, node: Node, context: EvaluationContext) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Name):
            if node.id == PARAMS_ROOT:
                return context.all_parameters()
            if node.id == VARS_ROOT:
                return {name: self._variable(name, context) for name in context.variables}
            return context.symbol(node.id)

        if isinstance(node, Member):
            if isinstance(node.target, Name) and node.target.id == PARAMS_ROOT:
                return context.parameter(node.attr)
            if isinstance(node.target, Name) and node.target.id == VARS_ROOT:
                return self._variable(node.attr, context)
            return self._member(self._node(node.target, context), node.attr)

        if isinstance(node, Index):
            key = self._node(node.index, context)
            if isinstance(node.target, Name) and isinstance(key, str):
                if node.target.id == PARAMS_ROOT:
                    return context.parameter(key)
                if node.target.id == VARS_ROOT:
                    return self._variable(key, context)
            return self._index(self._node(node.target, context), key)

        if isinstance(node, Call):
            if node.func == "if":
                return self._if(node, context)
            if node.func == "coalesce":
                return self._coalesce(node, context)
            function = self.functions.get(node.func)
            args = [self._node(arg, context) for arg in node.args]
            try:
                return function(context, *args)
            except TypeError as e:
                raise ExpressionError(f"Invalid arguments for {node.func}(): {e}") from e

        raise ExpressionError(f"Unsupported expression node {node!r}")

    def _if(self, node: Call, context: EvaluationContext) -> Any:
        if len(node.args) != 3:
            raise ExpressionError("if() expects a condition and two values")
        condition = self._node(node.args[0], context)
        if not isinstance(condition, bool):
            raise TypeMismatchError(f"if() condition must be bool, got {type_name(condition)}")
        return self._node(node.args[1] if condition else node.args[2], context)

    def _coalesce(self, node: Call, context: EvaluationContext) -> Any:
        for arg in node.args:
            value = self._node(arg, context)
            if value is not None:
                return value
        return None

    @staticmethod
    def _member(target: Any, attr: str) -> Any:
        if not isinstance(target, dict):
            raise TypeMismatchError(f"Cannot read property '{attr}' of {type_name(target)}")
        if attr not in target:
            raise ExpressionError(f"Property '{attr}' does not exist")
        return target[attr]

    @staticmethod
    def _index(target: Any, key: Any) -> Any:
        if isinstance(target, list):
            if not isinstance(key, int) or isinstance(key, bool):
                raise TypeMismatchError(f"Array index must be int, got {type_name(key)}")
            if not -len(target) <= key < len(target):
                raise ExpressionError(f"Index {key} is out of range")
            return target[key]
        if isinstance(target, dict):
            if not isinstance(key, str):
                raise TypeMismatchError(f"Object key must be string, got {type_name(key)}")
            if key not in target:
                raise ExpressionError(f"Property '{key}' does not exist")
            return target[key]
        raise TypeMismatchError(f"Cannot index into {type_name(target)}")
