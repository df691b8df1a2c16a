"""Durable JSON persistence for devharbor state"""

from devharbor.storage.store import DurableStore, STORAGE_VERSION
from devharbor.storage.records import ResourceStore, ProjectStore

__all__ = ["DurableStore", "STORAGE_VERSION", "ResourceStore", "ProjectStore"]
