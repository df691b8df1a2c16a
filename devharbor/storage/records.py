"""
Concrete stores for resource state and projects
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from devharbor.core.errors import NotFound, ValidationError
from devharbor.core.models import ProjectRecord, ResourceRecord, utcnow
from devharbor.storage.store import DurableStore

RESOURCE_STATE_FILE = "resources-state.json"
PROJECT_STATE_FILE = "projects-state.json"


class ResourceStore(DurableStore[ResourceRecord]):
    """Persists installed state and custom configuration per resource"""

    def __init__(self, data_dir: Union[str, Path]):
        super().__init__(Path(data_dir) / RESOURCE_STATE_FILE, ResourceRecord, name="ResourceStore")

    def get_record(self, resource_id: str) -> Optional[ResourceRecord]:
        return self.get(resource_id)

    def is_installed(self, resource_id: str) -> bool:
        record = self.get(resource_id)
        return bool(record and record.installed)

    async def put_record(self, record: ResourceRecord) -> ResourceRecord:
        return await self.set(record.id, record.model_copy(update={"updated_at": utcnow()}))

    async def update_record(self, resource_id: str, updates: Dict[str, Any]) -> ResourceRecord:
        return await self.update(resource_id, {**updates, "updated_at": utcnow()})


class ProjectStore(DurableStore[ProjectRecord]):
    """Persists the known per-project containers"""

    def __init__(self, data_dir: Union[str, Path]):
        super().__init__(Path(data_dir) / PROJECT_STATE_FILE, ProjectRecord, name="ProjectStore")

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        return self.get(project_id)

    def get_all_projects(self) -> List[ProjectRecord]:
        return sorted(self.get_all(), key=lambda project: project.order)

    def next_order(self) -> int:
        projects = self.get_all()
        if not projects:
            return 0
        return max(project.order for project in projects) + 1

    async def set_project(self, project: ProjectRecord) -> ProjectRecord:
        return await self.set(project.id, project.model_copy(update={"updated_at": utcnow()}))

    async def update_project(self, project_id: str, updates: Dict[str, Any]) -> ProjectRecord:
        new_id = updates.get("id")
        if new_id is not None and new_id != project_id:
            raise ValidationError("Cannot change project id", data={"id": project_id})
        if not self.has(project_id):
            raise NotFound(f"Project {project_id} not found", data={"id": project_id})
        return await self.update(project_id, {**updates, "updated_at": utcnow()})

    async def delete_project(self, project_id: str) -> None:
        await self.delete(project_id)

    async def reorder(self, project_ids: List[str]) -> None:
        """Assign order values following the given id sequence"""
        projects = self.get_all_as_record()
        for index, project_id in enumerate(project_ids):
            if project_id in projects and projects[project_id].order != index:
                await self.update(project_id, {"order": index})
