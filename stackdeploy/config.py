"""Engine settings and deployment target scope."""
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CLOUD = "AzureCloud"

# Metadata returned by the environment() template function.
CLOUD_ENVIRONMENTS: Dict[str, Dict[str, Any]] = {
    "AzureCloud": {
        "name": "AzureCloud",
        "resourceManager": "https://management.azure.com/",
        "authentication": {"loginEndpoint": "https://login.microsoftonline.com/"},
        "suffixes": {
            "storage": "core.windows.net",
            "sqlServerHostname": ".database.windows.net",
            "keyvaultDns": ".vault.azure.net",
        },
    },
    "AzureUSGovernment": {
        "name": "AzureUSGovernment",
        "resourceManager": "https://management.usgovcloudapi.net/",
        "authentication": {"loginEndpoint": "https://login.microsoftonline.us/"},
        "suffixes": {
            "storage": "core.usgovcloudapi.net",
            "sqlServerHostname": ".database.usgovcloudapi.net",
            "keyvaultDns": ".vault.usgovcloudapi.net",
        },
    },
    "AzureChinaCloud": {
        "name": "AzureChinaCloud",
        "resourceManager": "https://management.chinacloudapi.cn/",
        "authentication": {"loginEndpoint": "https://login.chinacloudapi.cn/"},
        "suffixes": {
            "storage": "core.chinacloudapi.cn",
            "sqlServerHostname": ".database.chinacloudapi.cn",
            "keyvaultDns": ".vault.azure.cn",
        },
    },
}


class EngineSettings(BaseModel):
    """Tunables for the deployment executor.

    Values come from defaults, then the root template's ``deployment:``
    block, then command line options.
    """
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    max_concurrency: int = Field(default=4, ge=1, alias="maxConcurrency")
    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    backoff_base_seconds: float = Field(default=1.0, ge=0, alias="backoffBaseSeconds")
    backoff_max_seconds: float = Field(default=30.0, ge=0, alias="backoffMaxSeconds")

    def merged(self, **overrides: Any) -> "EngineSettings":
        """Return a copy with every non-None override applied and validated."""
        data = self.model_dump()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return EngineSettings.model_validate(data)


@dataclass(frozen=True)
class DeploymentScope:
    """Where a frame's resources are created."""
    subscription_id: str
    location: str = ""
    resource_group: Optional[str] = None
    deployment_name: str = "stackdeploy"
    tenant_id: Optional[str] = None
    cloud: str = DEFAULT_CLOUD

    @property
    def subscription_resource_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}"

    @property
    def resource_group_id(self) -> Optional[str]:
        if not self.resource_group:
            return None
        return f"{self.subscription_resource_id}/resourceGroups/{self.resource_group}"

    def with_resource_group(self, name: str) -> "DeploymentScope":
        return replace(self, resource_group=name)

    def with_deployment_name(self, name: str) -> "DeploymentScope":
        return replace(self, deployment_name=name)
