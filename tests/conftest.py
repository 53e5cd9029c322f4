"""
Pytest configuration and shared fixtures for OmniCRM tests.

Test Categories:
- unit: Fast tests with no external dependencies
- integration: Tests exercising several services over one database
- requires_ollama: Tests requiring Ollama LLM to be running

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
import tempfile
from pathlib import Path

import pytest

from omnicrm.services.contact_store import ContactStore
from omnicrm.services.crm_core import build_crm_core
from omnicrm.services.message_store import MessageStore
from omnicrm.services.sync_state import SyncStateStore
from tests.fixtures.platform_fakes import FakeSummarizer


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Tests spanning several services")
    config.addinivalue_line("markers", "requires_ollama: Requires Ollama running")


@pytest.fixture
def temp_db():
    """Path to a throwaway SQLite database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def contact_store(temp_db):
    return ContactStore(temp_db)


@pytest.fixture
def message_store(temp_db):
    return MessageStore(temp_db)


@pytest.fixture
def sync_store(temp_db):
    return SyncStateStore(temp_db)


@pytest.fixture
def fake_summarizer():
    return FakeSummarizer()


@pytest.fixture
def core(temp_db, fake_summarizer):
    """A fully wired core over a temp database with a fake summarizer."""
    return build_crm_core(db_path=temp_db, summarizer=fake_summarizer)
