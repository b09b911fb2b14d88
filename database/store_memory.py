"""
InMemoryStorage — Dict-backed storage for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with FileStorage
  - Safe under a single asyncio event loop
  - All data lost on process restart
"""
from __future__ import annotations

import copy
import time
from collections import defaultdict
from typing import Any, Optional

import structlog

from core.errors import StorageError
from database.store_base import COLLECTIONS, BaseStorage
from models.schemas import UserAttribute

logger = structlog.get_logger()


def _now_ms() -> float:
    return time.time() * 1000


class InMemoryStorage(BaseStorage):

    def __init__(self):
        self._records: dict[str, dict[str, dict]] = {c: {} for c in COLLECTIONS}
        # user_id → key → [attribute, ...] oldest first
        self._attributes: dict[str, dict[str, list[UserAttribute]]] = defaultdict(dict)
        logger.debug("inmemory_storage_initialized")

    def _collection(self, collection: str) -> dict[str, dict]:
        if collection not in self._records:
            raise StorageError(f"unknown collection: {collection}")
        return self._records[collection]

    # ── Records ───────────────────────────────────────────

    async def get_record(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        data = self._collection(collection).get(record_id)
        return copy.deepcopy(data) if data is not None else None

    async def save_record(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        record_id = record.get("id")
        if not record_id:
            raise StorageError(f"{collection} record has no id")
        self._collection(collection)[str(record_id)] = copy.deepcopy(record)
        return record

    async def delete_record(self, collection: str, record_id: str) -> bool:
        return self._collection(collection).pop(record_id, None) is not None

    async def all_records(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._collection(collection).values()]

    # ── User attributes ───────────────────────────────────

    async def save_attribute(self, user_id: str, key: str, value: Any) -> UserAttribute:
        attr = UserAttribute(user_id=user_id, key=key, value=value, ts=_now_ms())
        self._attributes[user_id].setdefault(key, []).append(attr)
        return attr

    async def get_latest_attribute(self, user_id: str, key: str) -> Optional[UserAttribute]:
        series = self._attributes.get(user_id, {}).get(key)
        return series[-1] if series else None

    async def get_attributes(self, user_id: str, key: Optional[str] = None) -> list[UserAttribute]:
        by_key = self._attributes.get(user_id, {})
        if key is not None:
            return list(by_key.get(key, []))
        merged = [a for series in by_key.values() for a in series]
        return sorted(merged, key=lambda a: a.ts)
