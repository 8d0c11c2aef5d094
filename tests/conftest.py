"""
tests/conftest.py
Shared fixtures: a fresh SQLite store per test and a registered subject.
"""

import pytest

from fakes import subject
from shomer.store.sqlite_store import SqliteStore


@pytest.fixture
def store(tmp_path):
    return SqliteStore(tmp_path / "shomer.db")


@pytest.fixture
def account(store):
    profile = subject()
    store.upsert_account(profile)
    return profile
