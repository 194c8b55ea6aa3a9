"""Read-through cache with explicit invalidation.

The authoritative tables own the truth; entries here are disposable
projections. Every consumer goes through :meth:`CacheLayer.get_or_load` and
every writer of authoritative tenant data calls :meth:`CacheLayer.invalidate`
(or :meth:`CacheLayer.invalidate_tenant`) before its operation returns.

A backend outage never fails a request: reads fall through to the loader and
writes are skipped.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from cachetools import TLRUCache

from tenant_jobs.models import CacheEntry

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]

_MISSING = object()


class CacheKeys:
    """Cache key generators, namespaced ``<domain>:<tenant_id>[:<sub>]``."""

    DOMAINS = ("subscription", "plan", "quota", "quota_override", "branding", "permissions")

    @staticmethod
    def subscription(tenant_id: str) -> str:
        return f"subscription:{tenant_id}"

    @staticmethod
    def plan(tenant_id: str) -> str:
        return f"plan:{tenant_id}"

    @staticmethod
    def quota(tenant_id: str, quota_type: str) -> str:
        return f"quota:{tenant_id}:{quota_type}"

    @staticmethod
    def quota_override(tenant_id: str, quota_type: str) -> str:
        return f"quota_override:{tenant_id}:{quota_type}"

    @staticmethod
    def branding(tenant_id: str) -> str:
        return f"branding:{tenant_id}"

    @staticmethod
    def permissions(tenant_id: str) -> str:
        return f"permissions:{tenant_id}"

    @staticmethod
    def tenant_prefix(domain: str, tenant_id: str) -> str:
        """Prefix of all sub-keys of a domain for one tenant."""
        return f"{domain}:{tenant_id}:"


class CacheBackend(ABC):
    """Storage for cache entries. Implementations may raise on outage."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float, version: int) -> None:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete one key, returning the number removed."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete all keys starting with ``prefix``."""


class MemoryCacheBackend(CacheBackend):
    """In-process backend, for single-process deployments and tests.

    Entries live in a bounded ``cachetools.TLRUCache``: each expires at the
    deadline it was stored with and the least recently used entry is evicted
    once ``maxsize`` is reached.
    """

    def __init__(self, maxsize: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda key, entry, now: entry.expires_at,
            timer=clock,
        )

    @property
    def maxsize(self) -> int:
        return int(self._entries.maxsize)

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def set(self, key: str, value: Any, ttl: float, version: int) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=self._clock() + ttl,
            version=version,
        )

    async def delete(self, key: str) -> int:
        return 1 if self._entries.pop(key, None) is not None else 0

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Redis backend; values are stored as JSON with a native expiry."""

    def __init__(self, client, namespace: str = "cache"):
        """
        Args:
            client: ``redis.asyncio.Redis`` client
            namespace: Prefix prepended to every key
        """
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "cache") -> "RedisCacheBackend":
        from redis import asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True), namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        data = json.loads(raw)
        return CacheEntry(
            key=key,
            value=data["value"],
            expires_at=data["expires_at"],
            version=data.get("version", 0),
        )

    async def set(self, key: str, value: Any, ttl: float, version: int) -> None:
        body = json.dumps(
            {"value": value, "expires_at": time.time() + ttl, "version": version}
        )
        await self.client.set(self._key(key), body, px=max(1, int(ttl * 1000)))

    async def delete(self, key: str) -> int:
        return await self.client.delete(self._key(key))

    async def delete_prefix(self, prefix: str) -> int:
        pattern = re.sub(r"([*?\[\]\\])", r"\\\1", self._key(prefix)) + "*"
        keys = [key async for key in self.client.scan_iter(match=pattern, count=500)]
        if not keys:
            return 0
        return await self.client.delete(*keys)


class CacheLayer:
    """Read-through cache shared by every tenant-data consumer."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.logger = logger or logging.getLogger(__name__)
        self.stats = {"hits": 0, "misses": 0, "errors": 0}
        # Keys with a load in flight: how many loads, and how often they were
        # invalidated since the first one began
        self._loading: dict[str, int] = {}
        self._generations: dict[str, int] = {}

    async def get_or_load(self, key: str, ttl: float, loader: Loader) -> Any:
        """Return the live entry for ``key``, or compute it with ``loader`` and store it.

        A load that overlaps an invalidation of the same key returns its
        value without storing it.
        """
        cached = await self._read(key)
        if cached is not _MISSING:
            self.stats["hits"] += 1
            self.logger.debug(f"Cache HIT {key}")
            return cached

        self.stats["misses"] += 1
        self.logger.debug(f"Cache MISS {key}")

        generation = self._begin_load(key)
        try:
            value = await loader()
            if generation == self._generations[key]:
                await self._write(key, value, ttl)
            else:
                self.logger.debug(f"Skipping cache store for {key}, invalidated during load")
        finally:
            self._end_load(key)
        return value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Overwrite an entry with a freshly computed authoritative value."""
        self._bump(key)
        await self._write(key, value, ttl)

    async def invalidate(self, key: str) -> None:
        """Remove one entry; the next read calls its loader."""
        self._bump(key)
        try:
            await self.backend.delete(key)
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.error(f"Cache invalidation failed for {key}: {e}")

    async def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        for key in self._generations:
            if key.startswith(prefix):
                self._generations[key] += 1
        try:
            return await self.backend.delete_prefix(prefix)
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.error(f"Cache prefix invalidation failed for {prefix}: {e}")
            return 0

    async def invalidate_tenant(self, tenant_id: str, domains: Optional[tuple] = None) -> None:
        """Remove all entries of a tenant across the given (default: all) domains."""
        for domain in domains or CacheKeys.DOMAINS:
            await self.invalidate(f"{domain}:{tenant_id}")
            await self.invalidate_prefix(CacheKeys.tenant_prefix(domain, tenant_id))

    def _begin_load(self, key: str) -> int:
        self._loading[key] = self._loading.get(key, 0) + 1
        return self._generations.setdefault(key, 0)

    def _end_load(self, key: str) -> None:
        self._loading[key] -= 1
        if not self._loading[key]:
            del self._loading[key]
            del self._generations[key]

    def _bump(self, key: str) -> None:
        if key in self._generations:
            self._generations[key] += 1

    async def _read(self, key: str) -> Any:
        try:
            entry = await self.backend.get(key)
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.warning(f"Cache read failed for {key}, falling back to loader: {e}")
            return _MISSING
        return _MISSING if entry is None else entry.value

    async def _write(self, key: str, value: Any, ttl: float) -> None:
        try:
            await self.backend.set(key, value, ttl, self._generations.get(key, 0))
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.warning(f"Failed to cache {key}: {e}")
