"""Shared test fixtures and configuration.

Sets up fake environment variables so vigil.config doesn't sys.exit(),
and provides common fixtures like a temp slot store.
"""

import os

# Patch env vars BEFORE any vigil imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ZOOM_ACCOUNT_ID", "fake-account")
os.environ.setdefault("ZOOM_CLIENT_ID", "fake-client")
os.environ.setdefault("ZOOM_CLIENT_SECRET", "fake-secret")
os.environ.setdefault("ZOOM_MEETING_ID", "123456789")
os.environ.setdefault("LLM_API_KEY", "")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Africa/Harare")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_vigil.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a SlotStore backed by a temp file."""
    from vigil.data.db import SlotStore
    return SlotStore(db_path=tmp_db_path)


@pytest.fixture
def seeded_store(store):
    """A store with one owner holding the 14:00–14:30 slot."""
    store.add_owner("u1", "Alice@Example.com", display_name="Alice", chat_handle="1001")
    store.add_available_window("14:00–14:30")
    store.add_available_window("23:30–00:30")
    store.add_available_window("06:00–06:30")
    store.claim_slot("u1", "14:00–14:30")
    return store
