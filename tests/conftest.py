"""
Shared fixtures for StreamDB tests.

Each test gets a fresh temporary data directory with one initialized tenant.
"""

import os
import tempfile

import pytest
import pytest_asyncio

from dbaas.streamdb_server.store import AttachmentStore, EventStore, StreamStore, TenantDatabase


@pytest.fixture
def tenant_id():
    return "tenant_1"


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def db(data_dir, tenant_id):
    """Tenant database with schema created."""
    database = TenantDatabase(data_dir, wal_mode=False)
    await database.initialize_tenant(tenant_id)
    return database


@pytest.fixture
def streams(db):
    return StreamStore(db)


@pytest.fixture
def events(db):
    # Small batches so scans cross page boundaries
    return EventStore(db, scan_batch_size=2)


@pytest.fixture
def attachments(data_dir):
    return AttachmentStore(os.path.join(data_dir, "attachments"))
