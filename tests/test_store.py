"""
Tests for the in-memory entity store.
"""
import pytest

from pos_service.exceptions import NotFoundError, StoreWriteError
from pos_service.models import CartLine
from pos_service.store import InMemoryEntityStore


@pytest.fixture
def store():
    return InMemoryEntityStore(name="lines")


def test_put_rejects_duplicate_key(store):
    store.put("a", CartLine(unitPrice="1", quantity=1))
    with pytest.raises(StoreWriteError):
        store.put("a", CartLine(unitPrice="2", quantity=1))


def test_get_returns_a_copy(store):
    store.put("a", CartLine(name="x", unitPrice="1", quantity=1))
    store.get("a").name = "changed"
    assert store.get("a").name == "x"


def test_compare_and_swap(store):
    store.put("a", CartLine(name="x", unitPrice="1", quantity=1))
    assert store.compare_and_swap("a", "name", "x", "y", quantity=2)
    assert not store.compare_and_swap("a", "name", "x", "z")
    assert (store.get("a").name, store.get("a").quantity) == ("y", 2)
    with pytest.raises(NotFoundError):
        store.compare_and_swap("missing", "name", "x", "y")


def test_lock_map_tracks_stored_keys_only(store):
    store.put("a", CartLine(unitPrice="1", quantity=1))

    for key in ("missing-1", "missing-2", "a"):
        with store.locked(key):
            pass

    assert set(store._key_locks) == {"a"}


def test_lock_is_reentrant(store):
    store.put("a", CartLine(unitPrice="1", quantity=1))
    with store.locked("a"):
        with store.locked("a"):
            store.update("a", quantity=3)
    assert store.get("a").quantity == 3
