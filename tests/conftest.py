"""Shared fixtures: temp SQLite store, zero-delay config and fake page pool."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from kinsync.config import SyncConfig
from kinsync.identity import IdentityResolver
from kinsync.models import Gender, VitalEvent
from kinsync.net import ProviderGuards
from kinsync.store import SyncStore
from tests.fakes import FakePool, no_sleep


@pytest.fixture
def store(tmp_path) -> SyncStore:
    return SyncStore(tmp_path / "kinsync.db")


@pytest.fixture
def resolver(store) -> IdentityResolver:
    return IdentityResolver(store)


@pytest.fixture
def fast_config() -> SyncConfig:
    return SyncConfig(provider_delays={}, retry_initial_wait=0.0, retry_max_wait=0.0)


@pytest.fixture
def guards(fast_config) -> ProviderGuards:
    return ProviderGuards(fast_config, sleep=no_sleep)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def mock_page():
    page = MagicMock()
    page.url = "https://www.familysearch.org/tree/person/details/KWQ7-ABC"
    return page


@pytest.fixture
def john_smith() -> dict[str, Any]:
    return {
        "gender": Gender.MALE,
        "birth": VitalEvent(date="1850", place="Boston, Massachusetts"),
    }
