"""
tests/conftest.py -- Shared fixtures for credential store tests.

This module provides:
  - FrozenClock: a controllable UTC clock injected into the store so expiry
    tests advance time instead of sleeping
  - store: in-memory SQLite store for single-threaded tests
  - file_store: SQLite file store for tests that touch the database from
    more than one thread (concurrent writers, FastAPI TestClient)

Design: plain sqlite:///:memory: is per-connection, and SQLAlchemy pins one
connection per thread for it. That is fine for direct calls but a second
thread would see a blank schema, so threaded tests use a file under tmp_path.

Cost factors are overridden to bcrypt's floor (4) so the suite stays fast;
the default table is asserted separately in test_hashing.py.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from credentials.models import CredentialType
from credentials.store import CredentialStore

FAST_COSTS = {
    CredentialType.PASSWORD: 4,
    CredentialType.THIRD_PARTY: 0,
    CredentialType.SESSION_TOKEN: 1,
    CredentialType.PRIVILEGED_TOKEN: 4,
}

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable returning a fixed UTC instant until advance() moves it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock: FrozenClock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", costs=FAST_COSTS, clock=clock)
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path, clock: FrozenClock) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(f"sqlite:///{tmp_path / 'credentials.db'}", costs=FAST_COSTS, clock=clock)
    yield s
    s.close()
