"""Resource ID construction."""
from typing import Optional, Sequence

from ..config import DeploymentScope
from ..graph.models import RESOURCE_GROUP_TYPE


def build_resource_id(
    resource_type: str,
    names: Sequence[str],
    scope: DeploymentScope,
    scope_id: Optional[str] = None,
) -> str:
    """Build a fully qualified resource ID.

    Args:
        resource_type: Type such as ``Microsoft.Network/virtualNetworks/subnets``.
        names: One name per type segment after the namespace.
        scope: Deployment scope supplying subscription and resource group.
        scope_id: ID of the resource an extension resource is attached to.

    Raises:
        ValueError: If the number of names does not match the type segments.
    """
    namespace, _, rest = resource_type.partition("/")
    types = [segment for segment in rest.split("/") if segment]
    if not types:
        raise ValueError(f"Invalid resource type '{resource_type}'")
    if len(types) != len(names):
        raise ValueError(f"Resource type '{resource_type}' expects {len(types)} name(s), got {len(names)}")

    if resource_type.lower() == RESOURCE_GROUP_TYPE.lower():
        return f"{scope.subscription_resource_id}/resourceGroups/{names[0]}"

    prefix = scope_id or scope.resource_group_id or scope.subscription_resource_id
    segments = "/".join(f"{segment}/{name}" for segment, name in zip(types, names))
    return f"{prefix}/providers/{namespace}/{segments}"


def child_resource_id(parent_id: str, resource_type: str, name: str) -> str:
    """ID of a nested child resource, e.g. a subnet under its virtual network."""
    return f"{parent_id}/{resource_type.rsplit('/', 1)[-1]}/{name}"
