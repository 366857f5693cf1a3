import pytest

from app.services.broadcast import BroadcastHub
from app.services.record_store import MemoryRecordStore
from app.services.registry import reset_registry
from app.services.store_adapter import RecordStoreAdapter


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def adapter(store):
    return RecordStoreAdapter(store)


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture(autouse=True)
def fresh_registry():
    """Chaque test repart d'un store et d'un hub vierges."""
    reset_registry(MemoryRecordStore())
    yield
    reset_registry()
