"""Pydantic models for template document validation."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config import EngineSettings
from ..graph.models import ParameterType


class ParameterSpec(BaseModel):
    """Parameter declaration."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: ParameterType = ParameterType.STRING
    default: Any = None
    allowed_values: Optional[List[Any]] = Field(default=None, alias="allowedValues")
    secure: bool = False
    description: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class ResourceSpec(BaseModel):
    """Resource declaration.

    Every key that is not an engine field is kept as part of the request body.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    api_version: str = Field(alias="apiVersion")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    scope: Optional[str] = None
    parent: Optional[str] = None

    @property
    def body(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ModuleSpec(BaseModel):
    """Module declaration."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    source: str
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    scope: Optional[str] = None
    resource_group: Any = Field(default=None, alias="resourceGroup")


class Metadata(BaseModel):
    """Template metadata."""
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None


class TemplateDocument(BaseModel):
    """Root template schema."""
    model_config = ConfigDict(extra="forbid")

    metadata: Optional[Metadata] = None
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    resources: Dict[str, ResourceSpec] = Field(default_factory=dict)
    modules: Dict[str, ModuleSpec] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    deployment: Optional[EngineSettings] = None
