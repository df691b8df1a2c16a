"""
Durable key-value store with crash-safe writes

Each store instance persists one entity kind as a JSON envelope:

    {"items": {id: item}, "version": "1.0.0", "lastUpdated": <epoch ms>}

Writes go to a temporary file in the same directory which is then renamed
over the real file, so a reader never sees a partially written envelope.
"""

import asyncio
import copy
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

import aiofiles
import aiofiles.os
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from devharbor.core.errors import NotFound, NotInitialized, StorageCorrupt, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

STORAGE_VERSION = "1.0.0"


def _now_ms() -> int:
    return int(time.time() * 1000)


class DurableStore(Generic[T]):
    """
    Versioned, identifier-keyed persistence for one pydantic model type

    Reads are served from the in-memory envelope. Every mutation is
    serialized by a per-store lock and persisted before the call returns.
    """

    def __init__(self, path: Union[str, Path], item_type: Type[T], name: Optional[str] = None):
        self.path = Path(path)
        self.item_type = item_type
        self.name = name or self.__class__.__name__
        self._items: Optional[Dict[str, T]] = None
        self._version = STORAGE_VERSION
        self._last_updated = 0
        self._lock = asyncio.Lock()

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    @property
    def initialized(self) -> bool:
        return self._items is not None

    @property
    def last_updated(self) -> int:
        return self._last_updated

    async def initialize(self) -> None:
        """Load the envelope from disk, or start fresh if missing or corrupt"""
        async with self._lock:
            try:
                await self._load()
            except FileNotFoundError:
                logger.info(f"{self.name}: no state file at {self.path}, creating a new one")
                await self._save({}, STORAGE_VERSION)
            except StorageCorrupt as e:
                logger.warning(f"{self.name}: {e}; resetting to empty state")
                await self._save({}, STORAGE_VERSION)

    async def _load(self) -> None:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            raise StorageCorrupt(f"Unreadable state file {self.path}", cause=e)

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageCorrupt(f"State file {self.path} is not valid JSON", cause=e)

        self._items = self._decode_envelope(data, StorageCorrupt)
        self._version = data["version"]
        self._last_updated = int(data.get("lastUpdated") or 0)
        logger.info(f"{self.name}: loaded {len(self._items)} items from {self.path}")

    def _decode_envelope(self, data: Any, error_type: Type[Exception]) -> Dict[str, T]:
        """Validate envelope shape and decode every item"""
        if not isinstance(data, dict):
            raise error_type("Invalid envelope: expected an object")
        version = data.get("version")
        if not isinstance(version, str) or not version:
            raise error_type("Invalid envelope: missing version")
        if version.split(".")[0] != STORAGE_VERSION.split(".")[0]:
            raise error_type(f"Unsupported envelope version {version}")
        items = data.get("items")
        if not isinstance(items, dict):
            raise error_type("Invalid envelope: missing items")

        decoded: Dict[str, T] = {}
        for item_id, raw in items.items():
            try:
                decoded[item_id] = self.item_type.model_validate(raw)
            except PydanticValidationError as e:
                raise error_type(f"Invalid item {item_id!r}: {e.error_count()} validation errors")
        return decoded

    def validate_snapshot(self, data: Any) -> Dict[str, T]:
        """Decode an exported envelope without touching the store"""
        return self._decode_envelope(data, ValidationError)

    def _ensure_initialized(self) -> Dict[str, T]:
        if self._items is None:
            raise NotInitialized(f"{self.name} not initialized. Call initialize() first.")
        return self._items

    def _envelope(self) -> Dict[str, Any]:
        return self._build_envelope(self._ensure_initialized(), self._version, self._last_updated)

    @staticmethod
    def _build_envelope(items: Dict[str, T], version: str, last_updated: int) -> Dict[str, Any]:
        return {
            "items": {key: item.model_dump(mode="json") for key, item in items.items()},
            "version": version,
            "lastUpdated": last_updated,
        }

    async def save(self) -> None:
        """Persist the full envelope atomically"""
        async with self._lock:
            await self._save()

    async def _save(self, items: Optional[Dict[str, T]] = None, version: Optional[str] = None) -> None:
        """Write items to disk; the in-memory state is replaced only after the write succeeds"""
        if items is None:
            items = self._ensure_initialized()
        version = version or self._version
        last_updated = _now_ms()
        payload = json.dumps(self._build_envelope(items, version, last_updated), indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self._write_temp(self.temp_path, payload)
        await aiofiles.os.replace(self.temp_path, self.path)

        self._items = items
        self._version = version
        self._last_updated = last_updated
        logger.debug(f"{self.name}: saved state to {self.path}")

    async def _write_temp(self, temp_path: Path, payload: str) -> None:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())

    def _coerce(self, item: Union[T, Dict[str, Any]]) -> T:
        if isinstance(item, self.item_type):
            return item
        try:
            return self.item_type.model_validate(item)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {self.item_type.__name__}: {e}", cause=e)

    def get(self, item_id: str) -> Optional[T]:
        return self._ensure_initialized().get(item_id)

    def get_all(self) -> List[T]:
        return list(self._ensure_initialized().values())

    def get_all_as_record(self) -> Dict[str, T]:
        """Copy of the id -> item mapping"""
        return dict(self._ensure_initialized())

    def has(self, item_id: str) -> bool:
        return item_id in self._ensure_initialized()

    async def set(self, item_id: str, item: Union[T, Dict[str, Any]]) -> T:
        async with self._lock:
            value = self._coerce(item)
            await self._save({**self._ensure_initialized(), item_id: value})
            return value

    async def update(self, item_id: str, updates: Dict[str, Any]) -> T:
        """Merge a partial update into an existing item; not an upsert"""
        async with self._lock:
            items = self._ensure_initialized()
            existing = items.get(item_id)
            if existing is None:
                raise NotFound(
                    f"Item {item_id} not found in {self.name}",
                    data={"id": item_id},
                )
            value = self._coerce({**existing.model_dump(), **updates})
            await self._save({**items, item_id: value})
            return value

    async def delete(self, item_id: str) -> None:
        async with self._lock:
            items = dict(self._ensure_initialized())
            items.pop(item_id, None)
            await self._save(items)

    async def clear(self) -> None:
        async with self._lock:
            self._ensure_initialized()
            await self._save({})

    def export_data(self) -> Optional[Dict[str, Any]]:
        """Snapshot of the envelope for backup"""
        if self._items is None:
            return None
        return copy.deepcopy(self._envelope())

    async def import_data(self, data: Dict[str, Any]) -> None:
        """Replace the envelope with a validated snapshot and persist it"""
        async with self._lock:
            items = self.validate_snapshot(data)
            await self._save(items, data["version"])
            logger.info(f"{self.name}: imported {len(items)} items")
