"""
Resource definition registry

Service definitions are loaded once from a YAML catalogue and are immutable
for the process lifetime. Project definitions are derived on demand from the
project store, so a project added at runtime becomes installable at once.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from devharbor.core.errors import NotFound, ValidationError
from devharbor.core.models import ResourceDefinition, ResourceKind
from devharbor.storage.records import ProjectStore

logger = logging.getLogger(__name__)

DEFAULT_DEFINITIONS_PATH = Path(__file__).resolve().parent.parent / "definitions" / "services.yaml"


def load_service_definitions(path: Optional[Union[str, Path]] = None) -> List[ResourceDefinition]:
    """Load the service catalogue from YAML"""
    yaml_file = Path(path) if path else DEFAULT_DEFINITIONS_PATH
    try:
        with open(yaml_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load service definitions from {yaml_file}: {e}")
        raise ValidationError(f"Invalid service definitions file {yaml_file}: {e}", cause=e)

    if not isinstance(data, dict) or not isinstance(data.get("services"), list):
        raise ValidationError(f"Service definitions file {yaml_file} must contain a 'services' list")

    definitions = []
    seen = set()
    for entry in data["services"]:
        try:
            definition = ResourceDefinition.model_validate({**entry, "kind": ResourceKind.SERVICE})
        except (PydanticValidationError, TypeError) as e:
            raise ValidationError(f"Invalid service definition in {yaml_file}: {e}", cause=e)
        if definition.id in seen:
            raise ValidationError(f"Duplicate service id {definition.id!r} in {yaml_file}")
        seen.add(definition.id)
        definitions.append(definition)

    logger.info(f"Loaded {len(definitions)} service definitions from {yaml_file}")
    return definitions


class DefinitionRegistry:
    """Lookup of every installable resource, services first"""

    def __init__(
        self,
        services: Iterable[ResourceDefinition],
        projects: Optional[ProjectStore] = None,
    ):
        self._services: Dict[str, ResourceDefinition] = {d.id: d for d in services}
        self.projects = projects

    @classmethod
    def from_yaml(
        cls,
        path: Optional[Union[str, Path]] = None,
        projects: Optional[ProjectStore] = None,
    ) -> "DefinitionRegistry":
        return cls(load_service_definitions(path), projects)

    def services(self) -> List[ResourceDefinition]:
        return list(self._services.values())

    def required_services(self) -> List[ResourceDefinition]:
        return [d for d in self._services.values() if d.required]

    def is_service(self, resource_id: str) -> bool:
        return resource_id in self._services

    def project_definitions(self) -> List[ResourceDefinition]:
        if self.projects is None or not self.projects.initialized:
            return []
        return [p.to_definition() for p in self.projects.get_all_projects()]

    def get(self, resource_id: str) -> Optional[ResourceDefinition]:
        definition = self._services.get(resource_id)
        if definition is not None:
            return definition
        if self.projects is not None and self.projects.initialized:
            project = self.projects.get_project(resource_id)
            if project is not None:
                return project.to_definition()
        return None

    def require(self, resource_id: str) -> ResourceDefinition:
        definition = self.get(resource_id)
        if definition is None:
            raise NotFound(f"Unknown resource {resource_id!r}", data={"resource_id": resource_id})
        return definition

    def all(self) -> List[ResourceDefinition]:
        return self.services() + self.project_definitions()

    def __contains__(self, resource_id: str) -> bool:
        return self.get(resource_id) is not None
