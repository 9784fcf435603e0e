"""Azure Resource Manager provisioning client."""
import logging
from typing import Any, Dict, Optional

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient

from ..errors import PermanentProvisioningError, ProvisioningError, TransientProvisioningError
from ..graph.models import RESOURCE_GROUP_TYPE
from .client import ProvisioningClient, ProvisioningRequest, ProvisioningResult

logger = logging.getLogger(__name__)

# Throttling, conflicting operations in progress and server-side failures.
TRANSIENT_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


def classify_error(error: AzureError) -> ProvisioningError:
    """Map an Azure SDK error onto the transient/permanent taxonomy."""
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProvisioningError(str(error))
    if isinstance(error, HttpResponseError):
        status_code = error.status_code
        code = getattr(error.error, "code", None) if error.error is not None else None
        error_class = TransientProvisioningError if status_code in TRANSIENT_STATUS_CODES else PermanentProvisioningError
        return error_class(error.message or str(error), code=code, status_code=status_code)
    return PermanentProvisioningError(str(error))


class AzureProvisioningClient(ProvisioningClient):
    """Creates resources through the generic ARM resources API."""

    def __init__(self, subscription_id: str, credential=None):
        """Initialize the client.

        Args:
            subscription_id: Azure subscription ID.
            credential: Token credential; DefaultAzureCredential when omitted.
        """
        self.subscription_id = subscription_id
        self.credential = credential or DefaultAzureCredential()
        self.client = ResourceManagementClient(self.credential, subscription_id)

    @staticmethod
    def _is_resource_group(request: ProvisioningRequest) -> bool:
        return request.resource_type.lower() == RESOURCE_GROUP_TYPE.lower()

    @staticmethod
    def _body(request: ProvisioningRequest) -> Dict[str, Any]:
        return {key: value for key, value in request.payload.items() if key != "name"}

    def get(self, request: ProvisioningRequest) -> Optional[ProvisioningResult]:
        try:
            if self._is_resource_group(request):
                resource = self.client.resource_groups.get(request.name)
            else:
                resource = self.client.resources.get_by_id(request.resource_id, request.api_version)
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise classify_error(e) from e

        state = resource.serialize(keep_readonly=True)
        return ProvisioningResult("Succeeded", state.get("id", request.resource_id), state)

    def create_or_update(self, request: ProvisioningRequest) -> ProvisioningResult:
        logger.debug("PUT %s (api-version %s)", request.resource_id, request.api_version)
        try:
            if self._is_resource_group(request):
                resource = self.client.resource_groups.create_or_update(request.name, self._body(request))
            else:
                poller = self.client.resources.begin_create_or_update_by_id(
                    request.resource_id,
                    request.api_version,
                    self._body(request),
                )
                resource = poller.result()
        except AzureError as e:
            raise classify_error(e) from e

        state = resource.serialize(keep_readonly=True)
        provisioning_state = (state.get("properties") or {}).get("provisioningState", "Succeeded")
        if provisioning_state == "Failed":
            raise PermanentProvisioningError(f"Provisioning of {request.resource_id} ended in state Failed")
        return ProvisioningResult(provisioning_state, state.get("id", request.resource_id), state)
