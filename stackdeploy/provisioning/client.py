"""Provisioning API contract."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ProvisioningRequest:
    """Resolved resource definition ready to be materialized."""
    resource_type: str
    api_version: str
    name: str
    resource_id: str
    payload: Dict[str, Any]
    address: str = ""


@dataclass
class ProvisioningResult:
    """Outcome of a provisioning call.

    ``properties`` is the full remote representation of the resource as the
    API returns it (``location``, ``properties``, ``identity`` and so on).
    """
    status: str
    resource_id: str
    properties: Dict[str, Any] = field(default_factory=dict)


class ProvisioningClient(ABC):
    """Base class for provisioning API clients.

    Implementations must be safe to call from several worker threads and
    must raise TransientProvisioningError or PermanentProvisioningError so the
    executor can decide whether to retry.
    """

    @abstractmethod
    def get(self, request: ProvisioningRequest) -> Optional[ProvisioningResult]:
        """Read the current remote state.

        Args:
            request: Resolved resource definition.

        Returns:
            Optional[ProvisioningResult]: Remote state, or None if the resource does not exist.
        """
        pass

    @abstractmethod
    def create_or_update(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Create the resource or update it in place.

        Args:
            request: Resolved resource definition.

        Returns:
            ProvisioningResult: Remote state after the operation completed.
        """
        pass
