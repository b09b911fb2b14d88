"""
Abstract Storage — Interface for all persistence backends.

Implementations:
  - InMemoryStorage (dict-based, single-process, no persistence)
  - FileStorage     (JSON files on disk, single-process, durable)

Records are plain dicts keyed by their "id" field, grouped in three
collections: users, channels, teams. Each user also owns an append-only
attribute time series used for variable persistence.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import UserAttribute

COLLECTIONS = ("users", "channels", "teams")


class Collection:
    """`storage.users.get(...)`-style view over one collection."""

    def __init__(self, storage: BaseStorage, name: str):
        self._storage = storage
        self.name = name

    async def get(self, record_id: str) -> Optional[dict[str, Any]]:
        return await self._storage.get_record(self.name, record_id)

    async def save(self, record: dict[str, Any]) -> dict[str, Any]:
        return await self._storage.save_record(self.name, record)

    async def delete(self, record_id: str) -> bool:
        return await self._storage.delete_record(self.name, record_id)

    async def all(self) -> list[dict[str, Any]]:
        return await self._storage.all_records(self.name)


class BaseStorage(ABC):
    """Interface that all storage backends must implement."""

    @property
    def users(self) -> Collection:
        return Collection(self, "users")

    @property
    def channels(self) -> Collection:
        return Collection(self, "channels")

    @property
    def teams(self) -> Collection:
        return Collection(self, "teams")

    # ── Records ───────────────────────────────────────────────

    @abstractmethod
    async def get_record(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def save_record(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete_record(self, collection: str, record_id: str) -> bool:
        ...

    @abstractmethod
    async def all_records(self, collection: str) -> list[dict[str, Any]]:
        ...

    # ── User attributes ───────────────────────────────────────

    @abstractmethod
    async def save_attribute(self, user_id: str, key: str, value: Any) -> UserAttribute:
        ...

    @abstractmethod
    async def get_latest_attribute(self, user_id: str, key: str) -> Optional[UserAttribute]:
        ...

    @abstractmethod
    async def get_attributes(self, user_id: str, key: Optional[str] = None) -> list[UserAttribute]:
        """Full history, oldest first; all keys when `key` is None."""
        ...

    async def close(self) -> None:
        """Release resources and persist pending writes. No-op by default."""
        return None
