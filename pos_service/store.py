"""
store.py — Keyed Entity Store for Orders and Checkouts

Orders and checkouts live in an EntityStore owned by their orchestrator.
The store hands out copies, so callers change an entity only through
`update` / `compare_and_swap`, and it offers a per-key lock for
read-modify-write sequences that span an external call.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Generic, Iterator, Optional, TypeVar

from pydantic import BaseModel

from .exceptions import NotFoundError, StoreWriteError

T = TypeVar("T", bound=BaseModel)


class EntityStore(ABC, Generic[T]):
    """
    Interface for a concurrency-safe map from entity id to entity.

    Implementations must allow concurrent reads and serialize writes per key.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        ...

    @abstractmethod
    def put(self, key: str, entity: T) -> None:
        """Inserts a new entity. Raises StoreWriteError if the key is taken."""

    @abstractmethod
    def update(self, key: str, **changes) -> T:
        ...

    @abstractmethod
    def compare_and_swap(self, key: str, field: str, expected, new, **changes) -> bool:
        """Sets `field` to `new` (plus `changes`) only if it currently equals `expected`."""

    @abstractmethod
    def locked(self, key: str):
        """Context manager holding the exclusive lock of one entity."""


class InMemoryEntityStore(EntityStore[T]):
    """
    Process-local EntityStore.

    A global lock guards the map itself; a separate re-entrant lock per key is
    handed out by `locked()` so that slow work on one entity (protocol calls,
    stock updates) never blocks another.
    """

    def __init__(self, name: str = "entities"):
        self.name = name
        self._items: Dict[str, T] = {}
        self._key_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entity = self._items.get(key)
        return entity.model_copy(deep=True) if entity is not None else None

    def put(self, key: str, entity: T) -> None:
        with self._lock:
            if key in self._items:
                raise StoreWriteError(f"{self.name}: id {key} already exists")
            self._items[key] = entity.model_copy(deep=True)
            self._key_locks[key] = threading.RLock()

    def update(self, key: str, **changes) -> T:
        with self._lock:
            current = self._items.get(key)
            if current is None:
                raise NotFoundError(f"{self.name}: {key} not found")
            updated = current.model_copy(update=changes, deep=True)
            self._items[key] = updated
        return updated.model_copy(deep=True)

    def compare_and_swap(self, key: str, field: str, expected, new, **changes) -> bool:
        with self._lock:
            current = self._items.get(key)
            if current is None:
                raise NotFoundError(f"{self.name}: {key} not found")
            if getattr(current, field) != expected:
                return False
            self._items[key] = current.model_copy(update={field: new, **changes}, deep=True)
            return True

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._lock:
            # locks exist only for stored keys, so the lock map never outgrows the entity map
            key_lock = self._key_locks.get(key) or threading.RLock()
        with key_lock:
            yield

    def __len__(self):
        with self._lock:
            return len(self._items)
