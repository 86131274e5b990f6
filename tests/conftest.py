"""Pytest configuration and fixtures."""

from datetime import UTC, datetime, timedelta

import pytest

from offline_ledger_sync.storage.database import DatabaseManager


class FakeClock:
    """Settable wall clock for ledger timestamps and staleness checks."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTimer:
    """Settable monotonic timer for cache expiry."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def account_id() -> str:
    """Sample ledger account address."""
    return "blackbottle1qy352euf40x77qfrg4ncn27daufrg4ncnjxfk"


@pytest.fixture
def other_account_id() -> str:
    """A second, unrelated ledger account address."""
    return "blackbottle1zr9z2ge2ne6n6eyytm6dxcdyqlh2kkppeh8jz"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
async def db_manager(tmp_path):
    """A file-backed local store with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.sqlite'}")
    await manager.init_schema()
    yield manager
    await manager.dispose()


@pytest.fixture
def session_factory(db_manager):
    return db_manager.session_factory
