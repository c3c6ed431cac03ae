"""
Shared fixtures: every test gets its own SQLite file.
"""

import pytest

from gateway.core.db import init_db
from gateway.core.rules import create_rule
from gateway.core.users import create_user


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point DB_PATH at a fresh temporary database and create the schema."""
    path = tmp_path / "gateway.db"
    monkeypatch.setenv("DB_PATH", str(path))
    init_db()
    return path


@pytest.fixture
def admin(db_path):
    return create_user("Admin User", role="admin", email="admin@example.com", initial_credits=100)


@pytest.fixture
def member(db_path):
    return create_user("Member User", role="member", email="member@example.com", initial_credits=10)


@pytest.fixture
def make_rule(db_path):
    """Factory for rules with sensible defaults."""
    def _make(pattern, action="AUTO_ACCEPT", priority=0, **kwargs):
        return create_rule(pattern, action, priority=priority, **kwargs)
    return _make
