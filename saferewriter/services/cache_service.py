"""
Redis-backed TTL cache for rewrite results and computed stats.

Caching is strictly best-effort: when no Redis client is configured, or
Redis fails mid-call, every operation degrades to a miss / no-op instead
of raising.
"""

import hashlib
import json
import time
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from saferewriter.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

# Redis raises these straight from the socket layer on some failures
_CACHE_ERRORS = (RedisError, ConnectionError, TimeoutError, OSError)


class CacheStore:
    """
    Wraps an optional async Redis client.

    Values are stored as CacheEntry JSON: {"data", "timestamp" (epoch ms), "ttl" (s)}.
    Entries whose age exceeds their ttl are treated as absent and deleted.
    """

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        default_ttl: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self.default_ttl = default_ttl
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, default_ttl: int = 300, socket_timeout: float = 5.0) -> "CacheStore":
        """Build a store for a redis:// URL; an empty URL disables caching."""
        if not url:
            logger.warning("Redis URL not provided, cache will be disabled")
            return cls(None, default_ttl=default_ttl)
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, default_ttl=default_ttl)

    @property
    def is_enabled(self) -> bool:
        return self._client is not None

    def disable(self):
        """Drop the client; subsequent calls become no-ops."""
        self._client = None

    # ---------- key helpers ----------

    @staticmethod
    def _key(prefix: str, identifier: str) -> str:
        return f"{prefix}:{identifier}"

    @classmethod
    def rewrite_key(cls, message: str, region: str) -> str:
        digest = hashlib.sha256(f"{message}:{region}".encode("utf-8")).hexdigest()
        return cls._key("rewrite", digest)

    @classmethod
    def user_stats_key(cls, user_id: str) -> str:
        return cls._key("user_stats", user_id)

    @classmethod
    def analytics_key(cls, period: str) -> str:
        return cls._key("analytics", period)

    # ---------- entry encoding ----------

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _encode(self, data: Any, ttl: int) -> str:
        return json.dumps({"data": data, "timestamp": self._now_ms(), "ttl": ttl})

    def _decode(self, raw: Optional[str]) -> Optional[Dict[str, Any]]:
        """Parse a stored entry; None if missing or unreadable."""
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(entry, dict) or "data" not in entry:
            return None
        return entry

    def _is_expired(self, entry: Dict[str, Any]) -> bool:
        try:
            return self._now_ms() - int(entry["timestamp"]) > int(entry["ttl"]) * 1000
        except (KeyError, TypeError, ValueError):
            return True

    # ---------- single-key operations ----------

    async def get(self, key: str) -> Optional[Any]:
        if self._client is None:
            return None

        try:
            start = time.time()
            raw = await self._client.get(key)
            metrics.timing("cache.get.latency", time.time() - start)
        except _CACHE_ERRORS as e:
            logger.error("Error getting data from cache", key=key, error=str(e))
            return None

        entry = self._decode(raw)
        if entry is None:
            self._record("miss", key)
            return None

        if self._is_expired(entry):
            await self.delete(key)
            self._record("miss", key)
            return None

        self._record("hit", key)
        return entry["data"]

    async def set(self, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        if self._client is None:
            return False

        ttl = ttl if ttl is not None else self.default_ttl
        try:
            await self._client.setex(key, ttl, self._encode(data, ttl))
        except (TypeError, ValueError) as e:
            logger.error("Value is not JSON serializable", key=key, error=str(e))
            return False
        except _CACHE_ERRORS as e:
            logger.error("Error setting data in cache", key=key, error=str(e))
            return False

        self._record("set", key, ttl=ttl)
        return True

    async def delete(self, key: str) -> bool:
        if self._client is None:
            return False

        try:
            removed = await self._client.delete(key)
        except _CACHE_ERRORS as e:
            logger.error("Error deleting data from cache", key=key, error=str(e))
            return False

        self._record("delete", key)
        return removed > 0

    async def exists(self, key: str) -> bool:
        """True if a non-expired entry is stored under key."""
        if self._client is None:
            return False

        try:
            raw = await self._client.get(key)
        except _CACHE_ERRORS as e:
            logger.error("Error checking cache key existence", key=key, error=str(e))
            return False

        entry = self._decode(raw)
        if entry is None:
            return False
        if self._is_expired(entry):
            await self.delete(key)
            return False
        return True

    # ---------- batch operations ----------

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        if self._client is None or not keys:
            return [None for _ in keys]

        try:
            values = await self._client.mget(keys)
        except _CACHE_ERRORS as e:
            logger.error("Error getting multiple keys from cache", count=len(keys), error=str(e))
            return [None for _ in keys]

        results: List[Optional[Any]] = []
        for key, raw in zip(keys, values):
            entry = self._decode(raw)
            if entry is None:
                self._record("miss", key)
                results.append(None)
            elif self._is_expired(entry):
                await self.delete(key)
                self._record("miss", key)
                results.append(None)
            else:
                self._record("hit", key)
                results.append(entry["data"])
        return results

    async def mset(self, entries: List[Dict[str, Any]]) -> bool:
        """
        Store several entries in one pipeline.

        Each entry is {"key": str, "data": Any, "ttl": Optional[int]}.
        """
        if self._client is None or not entries:
            return False

        try:
            pipe = self._client.pipeline(transaction=False)
            for entry in entries:
                ttl = entry.get("ttl") or self.default_ttl
                pipe.setex(entry["key"], ttl, self._encode(entry["data"], ttl))
            await pipe.execute()
        except (TypeError, ValueError) as e:
            logger.error("Value is not JSON serializable", count=len(entries), error=str(e))
            return False
        except _CACHE_ERRORS as e:
            logger.error("Error setting multiple keys in cache", count=len(entries), error=str(e))
            return False

        for entry in entries:
            self._record("set", entry["key"], ttl=entry.get("ttl") or self.default_ttl)
        return True

    # ---------- maintenance ----------

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except _CACHE_ERRORS as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def clear(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.flushdb()
        except _CACHE_ERRORS as e:
            logger.error("Error clearing cache", error=str(e))
            return False
        logger.info("Cache cleared")
        return True

    async def get_stats(self) -> Dict[str, Any]:
        if self._client is None:
            return {"connected": False, "enabled": False, "keys": 0, "memory": None}
        try:
            keys = await self._client.dbsize()
            memory = await self._client.info("memory")
        except _CACHE_ERRORS as e:
            logger.error("Error getting cache stats", error=str(e))
            return {"connected": False, "enabled": True, "keys": 0, "memory": None, "error": str(e)}
        return {
            "connected": True,
            "enabled": True,
            "keys": keys,
            "memory": memory.get("used_memory_human") if isinstance(memory, dict) else memory,
        }

    async def close(self):
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except _CACHE_ERRORS as e:
            logger.error("Error disconnecting from Redis", error=str(e))

    def _record(self, operation: str, key: str, ttl: Optional[int] = None):
        metrics.increment(f"cache.{operation}")
        if ttl is None:
            logger.debug(f"Cache {operation}", key=key)
        else:
            logger.debug(f"Cache {operation}", key=key, ttl=ttl)
