"""
Key/value store with per-entry TTL.

Used for page-fetch caching and for handing listing batches to detail
workers. MemoryKVStore backs tests and single-process runs; PostgresKVStore
keeps entries in a ``crawl_cache`` table so they survive restarts.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from cachetools import TTLCache

from opportunity_crawler.core.db import get_db_conn

logger = logging.getLogger(__name__)

DEFAULT_MAXSIZE = 10000


class KVStore:
    """get/set interface every cache backend implements"""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def purge_expired(self) -> int:
        """Delete expired entries and return how many were dropped"""
        raise NotImplementedError


class MemoryKVStore(KVStore):
    """
    In-process store backed by cachetools.

    TTLCache has a single TTL per instance, so one cache is kept per distinct
    TTL. ``timer`` is passed through to every TTLCache.
    """

    def __init__(self, maxsize: int = DEFAULT_MAXSIZE, timer: Callable[[], float] = time.monotonic):
        self.maxsize = maxsize
        self.timer = timer
        self._caches: Dict[int, TTLCache] = {}

    def _cache_for(self, ttl_seconds: int) -> TTLCache:
        cache = self._caches.get(ttl_seconds)
        if cache is None:
            cache = TTLCache(maxsize=self.maxsize, ttl=ttl_seconds, timer=self.timer)
            self._caches[ttl_seconds] = cache
        return cache

    async def get(self, key: str) -> Optional[str]:
        for cache in self._caches.values():
            value = cache.get(key)
            if value is not None:
                return value
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        for ttl, cache in self._caches.items():
            if ttl != ttl_seconds:
                cache.pop(key, None)
        self._cache_for(ttl_seconds)[key] = value

    async def purge_expired(self) -> int:
        return sum(len(cache.expire()) for cache in self._caches.values())


class PostgresKVStore(KVStore):
    """Cache entries in the crawl_cache table"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def ensure_schema(self):
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS crawl_cache (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        expires_at TIMESTAMPTZ NOT NULL
                    )
                """)
                conn.commit()
        finally:
            conn.close()

    def _get(self, key: str) -> Optional[str]:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT value FROM crawl_cache
                    WHERE key = %s AND expires_at > NOW()
                """, (key,))
                row = cur.fetchone()
                return row[0] if row else None
        finally:
            conn.close()

    def _set(self, key: str, value: str, ttl_seconds: int):
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO crawl_cache (key, value, expires_at)
                    VALUES (%s, %s, NOW() + make_interval(secs => %s))
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                """, (key, value, ttl_seconds))
                conn.commit()
        finally:
            conn.close()

    def _purge_expired(self) -> int:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM crawl_cache WHERE expires_at <= NOW()")
                deleted = cur.rowcount
                conn.commit()
                return deleted
        finally:
            conn.close()

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._set, key, value, ttl_seconds)

    async def purge_expired(self) -> int:
        deleted = await asyncio.to_thread(self._purge_expired)
        if deleted:
            logger.info(f"[cache] Purged {deleted} expired cache entries")
        return deleted
