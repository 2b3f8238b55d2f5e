"""Entity persistence.

Provides the EntityStore interface and its in-memory and JSON file
implementations, plus a factory that picks one from settings.
"""

from testsmith.config.settings import TestsmithSettings
from testsmith.store.base import EntityStore
from testsmith.store.json_store import JsonStateStore
from testsmith.store.memory import InMemoryStore

__all__ = ["EntityStore", "InMemoryStore", "JsonStateStore", "create_store"]


def create_store(settings: TestsmithSettings) -> EntityStore:
    """Build the store configured in ``settings.storage``."""
    if settings.storage.backend == "memory":
        return InMemoryStore()
    return JsonStateStore(settings.state_dir)
