"""
Runtime object labels

Every container, volume and network devharbor creates is tagged with these
labels. The event monitor and label lookups only see labelled objects.
"""

from typing import Dict, Optional

from devharbor.core.models import ResourceKind, validate_identifier

LABEL_NAMESPACE = "dev.devharbor"


class LabelKeys:
    MANAGED = f"{LABEL_NAMESPACE}.managed"
    TYPE = f"{LABEL_NAMESPACE}.type"
    DESCRIPTION = f"{LABEL_NAMESPACE}.description"
    SERVICE_ID = f"{LABEL_NAMESPACE}.service-id"
    SERVICE_TYPE = f"{LABEL_NAMESPACE}.service-type"
    PROJECT_ID = f"{LABEL_NAMESPACE}.project-id"
    PROJECT_NAME = f"{LABEL_NAMESPACE}.project-name"
    VOLUME = f"{LABEL_NAMESPACE}.volume"


class ResourceTypes:
    SERVICE_CONTAINER = "service-container"
    SERVICE_VOLUME = "service-volume"
    PROJECT_CONTAINER = "project-container"
    PROJECT_VOLUME = "project-volume"
    NETWORK = "network"


def container_type_for(kind: ResourceKind) -> str:
    if kind == ResourceKind.PROJECT:
        return ResourceTypes.PROJECT_CONTAINER
    return ResourceTypes.SERVICE_CONTAINER


def identity_key_for(kind: ResourceKind) -> str:
    if kind == ResourceKind.PROJECT:
        return LabelKeys.PROJECT_ID
    return LabelKeys.SERVICE_ID


def _require(value: str, what: str) -> None:
    if not value or not isinstance(value, str):
        raise ValueError(f"{what} is required and must be a non-empty string")


def service_container_labels(service_id: str, service_type: str) -> Dict[str, str]:
    validate_identifier(service_id, "service id")
    _require(service_type, "Service type")
    return {
        LabelKeys.MANAGED: "true",
        LabelKeys.TYPE: ResourceTypes.SERVICE_CONTAINER,
        LabelKeys.SERVICE_ID: service_id,
        LabelKeys.SERVICE_TYPE: service_type,
    }


def service_volume_labels(service_id: str, volume_name: str) -> Dict[str, str]:
    validate_identifier(service_id, "service id")
    _require(volume_name, "Volume name")
    return {
        LabelKeys.MANAGED: "true",
        LabelKeys.TYPE: ResourceTypes.SERVICE_VOLUME,
        LabelKeys.SERVICE_ID: service_id,
        LabelKeys.VOLUME: volume_name,
    }


def project_container_labels(project_id: str, project_name: str) -> Dict[str, str]:
    validate_identifier(project_id, "project id")
    _require(project_name, "Project name")
    return {
        LabelKeys.MANAGED: "true",
        LabelKeys.TYPE: ResourceTypes.PROJECT_CONTAINER,
        LabelKeys.PROJECT_ID: project_id,
        LabelKeys.PROJECT_NAME: project_name,
    }


def project_volume_labels(project_id: str, volume_name: str) -> Dict[str, str]:
    validate_identifier(project_id, "project id")
    _require(volume_name, "Volume name")
    return {
        LabelKeys.MANAGED: "true",
        LabelKeys.TYPE: ResourceTypes.PROJECT_VOLUME,
        LabelKeys.PROJECT_ID: project_id,
        LabelKeys.VOLUME: volume_name,
    }


def network_labels() -> Dict[str, str]:
    return {
        LabelKeys.MANAGED: "true",
        LabelKeys.TYPE: ResourceTypes.NETWORK,
        LabelKeys.DESCRIPTION: "Shared network for devharbor services and projects",
    }


def resource_identity(labels: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """
    Recover (resource_id, kind, category) from container labels.

    Returns None for objects outside the label namespace.
    """
    if not labels or labels.get(LabelKeys.MANAGED) != "true":
        return None
    resource_type = labels.get(LabelKeys.TYPE)
    if resource_type == ResourceTypes.SERVICE_CONTAINER and labels.get(LabelKeys.SERVICE_ID):
        return {
            "resource_id": labels[LabelKeys.SERVICE_ID],
            "kind": ResourceKind.SERVICE.value,
            "category": labels.get(LabelKeys.SERVICE_TYPE),
        }
    if resource_type == ResourceTypes.PROJECT_CONTAINER and labels.get(LabelKeys.PROJECT_ID):
        return {
            "resource_id": labels[LabelKeys.PROJECT_ID],
            "kind": ResourceKind.PROJECT.value,
            "category": "project",
        }
    return None
