from __future__ import annotations

import pytest

from hostblock.config import HostFile, HostState
from hostblock.errors import LastErrors
from hostblock.rule_database import RuleDatabase
from hostblock.sources import ContentResolver, item_file


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def resolver(tmp_path):
    return ContentResolver(tmp_path / "grants.json")


@pytest.fixture
def last_errors(tmp_path):
    return LastErrors(tmp_path / "last_errors.json")


@pytest.fixture
def database(cache_dir, resolver):
    return RuleDatabase(cache_dir, resolver)


@pytest.fixture
def cached_list(cache_dir):
    """Create an HTTP source whose cache file already holds body."""
    def make(title: str, body: str, state: HostState = HostState.DENY) -> HostFile:
        item = HostFile(title=title, location=f"https://lists.example.org/{title}.txt", state=state)
        store = item_file(item, cache_dir)
        store.path.write_text(body, encoding="utf-8")
        return item
    return make
