"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip MongoDB and scheduler startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    return TestClient(app)


class FakeCursor:
    """Minimal stand-in for a motor cursor: to_list, sort/limit chaining and async iteration."""

    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, *args, **kwargs):
        return self

    def limit(self, *args, **kwargs):
        return self

    async def to_list(self, length=None):
        return list(self._docs)

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


def make_collection(find_docs=None):
    """MagicMock collection with async write methods and a FakeCursor find()."""
    collection = MagicMock()
    collection.find = MagicMock(return_value=FakeCursor(find_docs or []))
    collection.find_one = AsyncMock(return_value=None)
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1))
    collection.update_many = AsyncMock(return_value=MagicMock(modified_count=0))
    collection.delete_one = AsyncMock()
    collection.delete_many = AsyncMock()
    return collection


@pytest.fixture
def mock_db():
    db = MagicMock()
    for name in (
        "tasks",
        "task_events",
        "clients",
        "services",
        "document_templates",
        "template_backups",
        "client_update_queue",
        "field_schema_snapshots",
        "audit_logs",
    ):
        setattr(db, name, make_collection())
    return db
