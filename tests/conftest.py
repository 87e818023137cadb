import pytest
import pytest_asyncio

from algosync.core.db import init_db, close_db
from algosync.events.outbox_store import OutboxStore
from algosync.services.checkpoint_store import CheckpointStore


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database with all tables, per test."""
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def outbox_store():
    return OutboxStore(max_retries=3)


@pytest.fixture
def checkpoint_store():
    return CheckpointStore()
