"""
Pytest fixtures and test configuration for refinery tests.
"""

import logging

import pytest

from refinery.storage import SQLiteStorage

OWNER = "test-owner"


@pytest.fixture(autouse=True)
def refinery_home(tmp_path, monkeypatch):
    """Keep logs and default databases inside the test's tmp dir."""
    home = tmp_path / "refinery-home"
    monkeypatch.setenv("REFINERY_DATA_DIR", str(home))
    monkeypatch.delenv("REFINERY_OWNER_ID", raising=False)
    return home


@pytest.fixture(autouse=True)
def clean_refinery_logger():
    """Remove handlers that setup_refinery_logging attached during a test."""
    logger = logging.getLogger("refinery")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def storage(tmp_path):
    """SQLite storage on a fresh database file."""
    s = SQLiteStorage(db_path=tmp_path / "memories.db")
    yield s
    s.close()


@pytest.fixture
def owner_id():
    return OWNER


@pytest.fixture
def store(storage, owner_id):
    return storage.memory_store(owner_id)


@pytest.fixture
def audit(storage, owner_id):
    return storage.audit_trail(owner_id)


@pytest.fixture
def add_entry(store):
    """Create a core entry of a given size; content is ``chars`` characters long."""

    def _add(content=None, chars=None, kind="core", protected=False, prefix="memory"):
        if content is None:
            content = (prefix + " ").ljust(chars or 40, "x")
        entry = store.create(content, kind)
        if protected:
            store.set_protected(entry, True)
        return entry

    return _add
