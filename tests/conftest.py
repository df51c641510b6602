from datetime import datetime, timezone

import pytest

from osteo_sync.audit import AuditLogger, MemoryAuditSink
from osteo_sync.store import InMemoryStore

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
TENANT = "osteo-1"


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def tenant():
    return TENANT


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def audit(sink):
    return AuditLogger(sink, actor=TENANT)


@pytest.fixture
def seed(store):
    """Insert a document owned by the test osteopath unless ``osteopathId`` is given."""

    def _seed(collection, doc_id, **fields):
        return store.add(collection, doc_id, {"osteopathId": TENANT, **fields})

    return _seed
