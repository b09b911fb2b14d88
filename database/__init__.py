"""
Database layer — pluggable persistence for users, channels, teams and
per-user attribute history.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_storage
  storage = create_storage()
  await storage.users.save({"id": "u1"})
"""
from database.store_base import BaseStorage, Collection, COLLECTIONS
from database.store_memory import InMemoryStorage
from database.store_file import FileStorage
from database.store_factory import create_storage

__all__ = [
    "BaseStorage", "Collection", "COLLECTIONS",
    "InMemoryStorage", "FileStorage",
    "create_storage",
]
