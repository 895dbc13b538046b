"""Pytest configuration and shared fixtures for the NEPSE-Ingest test suite.

This module provides hermetic test infrastructure with the following guarantees:
- No external network requests (Playwright and Redis are replaced by doubles)
- Deterministic execution (an injectable exchange clock)
- Isolated state (fresh settings singleton and in-memory database per test)

Design Rationale:
    The durable store is exercised for real against SQLite in memory, so
    upsert semantics are tested against an actual SQL engine. The cache is
    an in-memory double of exactly the Redis commands the pipeline issues.
"""

import fnmatch
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config.settings import GlobalConfig
from nepse_ingest.cache import LiveCache
from nepse_ingest.store import Store
from nepse_ingest.validator import MarketIndexSnapshot, PriceQuote

MARKET_TZ = timezone(timedelta(hours=5, minutes=45))
BUSINESS_DATE = date(2024, 6, 10)  # a Monday, trading day


@pytest.fixture
def mock_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[GlobalConfig]:
    """Provide isolated GlobalConfig with safe test defaults.

    Overrides the lru_cache singleton to prevent state leakage between tests.
    Uses tmp_path for all file operations to avoid polluting the filesystem.
    """
    from config.settings import get_config

    get_config.cache_clear()

    log_dir = tmp_path / "logs"
    output_dir = tmp_path / "output"
    log_dir.mkdir()
    output_dir.mkdir()

    test_env = {
        "APP_NAME": "NEPSE-Ingest-Test",
        "ENVIRONMENT": "test",
        "DEBUG": "false",
        "HEADLESS": "true",
        "LOG_LEVEL": "DEBUG",
        "LOG_DIR": str(log_dir),
        "LOG_ROTATION": "1 day",
        "LOG_RETENTION": "1 day",
        "BASE_URL": "https://test.example.com/",
        "REQUEST_TIMEOUT_MS": "5000",
        "STRATEGY_TIMEOUT_SEC": "5",
        "EXTRACTION_MAX_ATTEMPTS": "3",
        "EXTRACTION_RETRY_DELAY_SEC": "0",
        "WATCHDOG_FAILURE_THRESHOLD": "0.30",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_URL": "redis://localhost:6379/15",
        "JOB_TIMEOUT_SEC": "30",
        "SHUTDOWN_GRACE_SEC": "1",
        "OUTPUT_DIR": str(output_dir),
    }

    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    config = get_config()

    yield config

    get_config.cache_clear()


class FixedClock:
    """Exchange clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int, day: date | None = None) -> None:
        day = day or self.now.date()
        self.now = datetime(day.year, day.month, day.day, hour, minute, tzinfo=MARKET_TZ)


@pytest.fixture
def market_clock() -> FixedClock:
    """Clock fixed at 11:20 exchange time on a trading day."""
    return FixedClock(datetime(2024, 6, 10, 11, 20, tzinfo=MARKET_TZ))


class InMemoryRedis:
    """In-memory double of the ``redis.asyncio`` commands the cache issues.

    Setting ``fail = True`` makes every command raise a redis
    ``ConnectionError``, as an unreachable server would.
    """

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self._check()
        bucket = self.hashes.setdefault(key, {})
        added = len(set(mapping) - set(bucket))
        bucket.update({field: str(value) for field, value in mapping.items()})
        return added

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(key, {}))

    async def hget(self, key: str, field: str) -> str | None:
        self._check()
        return self.hashes.get(key, {}).get(field)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        zset = self.zsets.setdefault(key, {})
        added = len(set(mapping) - set(zset))
        zset.update(mapping)
        return added

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        ordered = [
            member
            for member, _ in sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        ]
        return ordered[start:] if end == -1 else ordered[start : end + 1]

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[key] = seconds
        return key in self.zsets or key in self.hashes

    async def ttl(self, key: str) -> int:
        return self.ttls.get(key, -1)

    async def aclose(self) -> None:
        self.closed = True

    def keys(self, pattern: str = "*") -> list[str]:
        names = set(self.hashes) | set(self.zsets)
        return sorted(name for name in names if fnmatch.fnmatch(name, pattern))


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def live_cache(fake_redis: InMemoryRedis) -> LiveCache:
    return LiveCache(fake_redis, prefix="test:")


@pytest_asyncio.fixture
async def store() -> Store:
    """Durable store on a private in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    instance = Store(engine)
    await instance.create_schema()
    yield instance
    await instance.dispose()


@pytest.fixture
def quote_factory():
    """Build PriceQuote instances with sensible defaults."""

    def _make(symbol: str = "NABIL", close: float = 500.0, **overrides: Any) -> PriceQuote:
        fields: dict[str, Any] = {
            "symbol": symbol,
            "security_id": 131,
            "security_name": f"{symbol} Ltd.",
            "business_date": BUSINESS_DATE,
            "open_price": max(close - 5, 0),
            "high_price": close + 10,
            "low_price": max(close - 10, 0),
            "close_price": close,
            "previous_close": max(close - 2, 0),
            "volume": 1000,
            "turnover": close * 1000,
            "total_trades": 25,
        }
        fields.update(overrides)
        return PriceQuote.model_validate(fields)

    return _make


@pytest.fixture
def snapshot_factory():
    """Build MarketIndexSnapshot instances with sensible defaults."""

    def _make(index_value: float = 2450.32, status_time: str | None = "11:15 AM", **overrides: Any):
        fields: dict[str, Any] = {
            "index_value": index_value,
            "change": 12.5,
            "percentage_change": 0.51,
            "turnover": 1_250_000_000,
            "traded_shares": 3_400_000,
            "transactions": 45_000,
            "status": "OPEN",
            "status_date": "2024-06-10",
            "status_time": status_time,
            "trading_date": BUSINESS_DATE,
        }
        fields.update(overrides)
        return MarketIndexSnapshot.model_validate(fields)

    return _make


@pytest.fixture
def mock_session() -> MagicMock:
    """SessionManager double whose pages are plain MagicMocks."""
    session = MagicMock()
    session.new_page = AsyncMock(side_effect=lambda: MagicMock())
    session.close_page = AsyncMock()
    session.navigate = AsyncMock()
    session.release = AsyncMock()
    session.is_connected = False
    session.profile_dir = None
    return session


# Pytest configuration
def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests requiring full stack",
    )
