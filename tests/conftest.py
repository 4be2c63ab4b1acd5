"""
Shared fixtures for the telemetry ingest tests.

Storage tests run against a throwaway SQLite database (aiosqlite), so the
same SQL that runs on PostgreSQL in production is exercised without a server.
"""

import os
import sys

import pytest
import pytest_asyncio

# Add app directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'app'))

from settings import topic_patterns
from telemetry_store import TelemetryStore
from topic_router import TopicRouter


@pytest_asyncio.fixture
async def store(tmp_path):
    """TelemetryStore on a fresh SQLite file with the schema created."""
    telemetry_store = TelemetryStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'telemetry.db'}")
    await telemetry_store.init_schema()
    yield telemetry_store
    await telemetry_store.close()


@pytest.fixture
def router():
    """Router with the default CDC topic patterns."""
    return TopicRouter(topic_patterns("CDC"))
