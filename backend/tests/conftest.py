"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from relay.chat.relay import relay
from relay.main import app
from relay.messages.service import MessageStore


@pytest.fixture(autouse=True)
def memory_store():
    """Use an in-memory MessageStore for each test.

    Must run before anything touches ``MessageStore.get_instance()`` so the
    relay never opens the file-based relay_messages.duckdb.
    """
    MessageStore.reset_instance()
    store = MessageStore.get_instance(db_path=":memory:")
    yield store
    MessageStore.reset_instance()


@pytest.fixture(autouse=True)
def reset_relay():
    """Drop any connection a test left registered on the global relay."""
    yield
    for connection in relay.registry.all_connections():
        relay.disconnect(connection.id)


@pytest.fixture
def api_client():
    """Provide a TestClient sharing one event loop across WebSocket sessions."""
    with TestClient(app) as client:
        yield client
