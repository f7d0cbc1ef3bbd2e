"""Shared test fixtures and configuration."""

import os
from pathlib import Path
import sys

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


# Pin every setting the tests rely on so a developer's shell cannot leak in
TEST_ENV = {
    "OPENSEARCH_ENDPOINT": "http://localhost:9200",
    "OPENSEARCH_USERNAME": "",
    "OPENSEARCH_PASSWORD": "",
    "VERIFY_CERTS": "true",
    "REQUEST_TIMEOUT_SECONDS": "30",
    "MAX_RETRIES": "3",
    "NUMBER_OF_SHARDS": "3",
    "NUMBER_OF_REPLICAS": "0",
    "REFRESH_INTERVAL": "1s",
    "PRECREATE_PARTITIONS": "false",
    "BULK_BATCH_SIZE": "1000",
    "BULK_MAX_WORKERS": "8",
    "MAX_PAGE_SIZE": "1000",
    "LOG_LEVEL": "info",
    "LOG_JSON": "true",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from partitioned_search.config import Settings
from partitioned_search.search_index import SearchIndex
from tests.fixtures.clock import FIXED_NOW
from tests.fixtures.fake_engine import FakeSearchEngine


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Reset environment variables to the test defaults before each test."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def settings():
    return Settings()  # type: ignore[call-arg]


@pytest.fixture
def fake_engine():
    return FakeSearchEngine()


@pytest.fixture
def search_index(fake_engine, settings):
    """Facade over the in-memory engine with the clock pinned to 2024-08-24."""
    index = SearchIndex(fake_engine, settings, clock=lambda: FIXED_NOW)
    yield index
    index.close()
