"""
Shared fixtures for the test suite.
"""

import os
import tempfile

import pytest

from ai_cost_audit.storage.db import StatsDatabase
from ai_cost_audit.storage.migrations import SchemaMigrator
from ai_cost_audit.storage.repository import EventStore


@pytest.fixture
def db_path():
    """Path to a database file inside a throwaway directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "stats.db")


@pytest.fixture
def database(db_path):
    """Fully migrated stats database."""
    db = StatsDatabase(db_path)
    SchemaMigrator(db).run_migrations()
    yield db
    db.close()


@pytest.fixture
def events(database):
    return EventStore(database)
