"""Exception hierarchy for template loading, evaluation and provisioning."""
from typing import Iterable, List, Optional


class StackDeployError(Exception):
    """Base class for all engine errors."""


class TemplateError(StackDeployError):
    """Raised when a template document is structurally invalid.

    These are deployment-author errors and are never retried.
    """


class DuplicateNameError(TemplateError):
    """Raised when two entities share a symbolic name within one scope."""

    def __init__(self, name: str, scope: Optional[str] = None):
        self.name = name
        self.scope = scope
        where = f" in {scope}" if scope else ""
        super().__init__(f"Duplicate symbolic name '{name}'{where}")


class CyclicDependencyError(TemplateError):
    """Raised when the dependency graph contains at least one cycle."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Cyclic dependency between: {', '.join(self.cycle)}")


class UnknownSymbolError(TemplateError):
    """Raised when an expression or field names a symbol that is not declared."""

    def __init__(self, symbol: str, referrer: Optional[str] = None):
        self.symbol = symbol
        self.referrer = referrer
        source = f" (referenced by '{referrer}')" if referrer else ""
        super().__init__(f"Unknown symbol '{symbol}'{source}")


class ExpressionError(TemplateError):
    """Raised when an expression cannot be evaluated."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression cannot be parsed."""

    def __init__(self, message: str, source: str, position: int):
        self.source = source
        self.position = position
        super().__init__(f"{message} at position {position} in '{source}'")


class TypeMismatchError(ExpressionError):
    """Raised when a value has an incompatible type for the operation."""


class MissingParameterError(TemplateError):
    """Raised when a parameter has neither a bound value nor a default."""

    def __init__(self, name: str, scope: Optional[str] = None):
        self.name = name
        self.scope = scope
        where = f" for {scope}" if scope else ""
        super().__init__(f"Missing value for parameter '{name}'{where}")


class InvalidParameterValueError(TemplateError):
    """Raised when a parameter value is not one of its allowed values."""


class UnresolvedReferenceError(StackDeployError):
    """Raised when an expression references a node that is not yet terminal.

    The executor treats this as "not ready" rather than as a failure.
    """

    def __init__(self, address: str, state: Optional[str] = None):
        self.address = address
        self.state = state
        detail = f" (currently {state})" if state else ""
        super().__init__(f"Reference to '{address}' is not resolved yet{detail}")


class ProvisioningError(StackDeployError):
    """Base class for errors reported by a provisioning client."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class TransientProvisioningError(ProvisioningError):
    """Rate limiting or transient network failure; retried with backoff."""


class PermanentProvisioningError(ProvisioningError):
    """Semantic rejection of a payload; never retried."""
