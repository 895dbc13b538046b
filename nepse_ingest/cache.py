"""Fast cache adapter over ``redis.asyncio``.

Keys (all prefixed with ``redis_key_prefix``):

    live:market_status             hash   status, is_open, trading_date, last_updated
    live:market_index              hash   MarketIndexSnapshot fields + last_updated
    live:stock_prices              hash   symbol -> PriceQuote JSON
    live:metadata                  hash   last_price_update, last_price_date
    intraday:market_index:{date}   zset   snapshot JSON scored by ingestion ms
    intraday:{date}:{symbol}       zset   quote JSON scored by ingestion ms

Every client error is raised as ``CacheError`` so callers can degrade to
the durable store with a single ``except``.
"""

import json
from typing import Any, Mapping

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.settings import GlobalConfig, get_config
from nepse_ingest.exceptions import CacheError
from nepse_ingest.logger import get_logger

log = get_logger(__name__)

MARKET_STATUS_KEY = "live:market_status"
MARKET_INDEX_KEY = "live:market_index"
STOCK_PRICES_KEY = "live:stock_prices"
METADATA_KEY = "live:metadata"


def market_series_key(trading_date: str) -> str:
    return f"intraday:market_index:{trading_date}"


def price_series_key(trading_date: str, symbol: str) -> str:
    return f"intraday:{trading_date}:{symbol}"


class LiveCache:
    """Thin, error-wrapping facade over the Redis commands the pipeline uses.

    Args:
        client: ``redis.asyncio.Redis`` created with ``decode_responses=True``
            (or any object exposing the same coroutine methods).
        prefix: Namespace prepended to every key.
    """

    def __init__(self, client: Any, prefix: str = "") -> None:
        self._client = client
        self.prefix = prefix

    @classmethod
    def from_config(cls, config: GlobalConfig | None = None) -> "LiveCache | None":
        """Build the cache from settings; None when the cache is disabled."""
        config = config or get_config()
        if not config.cache_enabled:
            log.info("Fast cache disabled, running store-only")
            return None
        client = redis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_timeout=config.redis_socket_timeout_sec,
            socket_connect_timeout=config.redis_socket_timeout_sec,
        )
        return cls(client, config.redis_key_prefix)

    def key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def _call(self, operation: str, method: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self._client, method)(*args, **kwargs)
        except (RedisError, OSError) as exc:
            raise CacheError(operation=operation, reason=str(exc)) from exc

    async def ping(self) -> bool:
        return bool(await self._call("ping", "ping"))

    async def put_hash(self, name: str, mapping: Mapping[str, Any]) -> None:
        """Replace fields of hash ``name``; values are stored as strings."""
        encoded = {field: "" if value is None else str(value) for field, value in mapping.items()}
        await self._call(f"hset {name}", "hset", self.key(name), mapping=encoded)

    async def get_hash(self, name: str) -> dict[str, str]:
        return await self._call(f"hgetall {name}", "hgetall", self.key(name)) or {}

    async def get_hash_field(self, name: str, field: str) -> str | None:
        return await self._call(f"hget {name}", "hget", self.key(name), field)

    async def append_series(self, name: str, member: Mapping[str, Any], score_ms: int) -> None:
        """Add a JSON snapshot to sorted set ``name`` scored by ingestion time."""
        payload = json.dumps(member, default=str, sort_keys=True)
        await self._call(f"zadd {name}", "zadd", self.key(name), {payload: score_ms})

    async def last_series_member(self, name: str) -> dict[str, Any] | None:
        """Most recent snapshot of sorted set ``name``."""
        members = await self._call(f"zrange {name}", "zrange", self.key(name), -1, -1)
        if not members:
            return None
        try:
            return json.loads(members[0])
        except ValueError:
            log.warning("Unreadable series member", key=name)
            return None

    async def series(self, name: str) -> list[dict[str, Any]]:
        """All snapshots of sorted set ``name`` in score order."""
        members = await self._call(f"zrange {name}", "zrange", self.key(name), 0, -1)
        return [json.loads(member) for member in members or []]

    async def expire(self, name: str, seconds: int) -> None:
        await self._call(f"expire {name}", "expire", self.key(name), seconds)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            log.warning("Error closing cache client", error=str(exc))
