"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta

import pytest

from cryptalert.data.fetcher import MarketDataSource, MarketSnapshot
from cryptalert.database.connection import Database
from cryptalert.errors import NetworkError


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDataSource(MarketDataSource):
    """Market data source serving canned snapshots."""

    def __init__(self, snapshots=None):
        self.snapshots = dict(snapshots or {})
        self.calls: list[str] = []

    def get_coin_data(self, coin_id: str) -> MarketSnapshot:
        self.calls.append(coin_id)
        snapshot = self.snapshots.get(coin_id)
        if isinstance(snapshot, Exception):
            raise snapshot
        if snapshot is None:
            raise NetworkError(f"No data for {coin_id}")
        return snapshot


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_source():
    """Market data source with no coins until a test adds snapshots."""
    return FakeDataSource()


@pytest.fixture
def price_alert_data():
    """Sample PRICE_ABOVE alert for bitcoin."""
    return {
        "coinId": "bitcoin",
        "coinSymbol": "btc",
        "type": "price_above",
        "targetValue": 50000,
    }


@pytest.fixture
def sample_coingecko_market():
    """Sample CoinGecko /coins/markets item."""
    return {
        "id": "bitcoin",
        "symbol": "btc",
        "name": "Bitcoin",
        "current_price": 51000.0,
        "market_cap": 1_000_000_000_000,
        "total_volume": 25_000_000_000,
        "price_change_percentage_24h": 3.5,
    }


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@cryptalert.app",
        "to_addresses": ["recipient@example.com"],
    }
