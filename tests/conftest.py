"""Shared fixtures for community mirror tests."""

from unittest.mock import MagicMock

import pytest

from community_mirror.config import Backend, Config, GroupSpec

from fakes import FakeFetcher, FixedClock, InMemoryCheckpointStore, InMemoryEntityStore


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def checkpoint_store():
    return InMemoryCheckpointStore()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def aggregation():
    mock = MagicMock()
    for name in (
        "issue_count_by_org",
        "pull_request_count_by_org",
        "contributor_count_by_org",
        "issue_count_by_group",
        "pull_request_count_by_group",
        "contributor_count_by_group",
    ):
        getattr(mock, name).return_value = 0
    return mock


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_config():
    def _make(repositories=(), organizations=(), retry=2, cron="@every 1h", workers=2):
        return Config(
            groups=(GroupSpec(
                name="g",
                organizations=tuple(organizations),
                repositories=tuple(repositories),
            ),),
            backend=Backend(cron=cron, retry=retry, workers=workers),
        )
    return _make


@pytest.fixture
def mock_database():
    """A Database double whose transaction() yields a MagicMock cursor."""
    database = MagicMock()
    cursor = MagicMock()
    database.transaction.return_value.__enter__.return_value = cursor
    database.transaction.return_value.__exit__.return_value = False
    database.cursor = cursor
    return database
