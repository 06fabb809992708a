"""Short-lived response cache with in-flight request deduplication."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import urlencode

from billing_client.async_rest import AsyncTransientApiError

LOGGER = logging.getLogger("billing_sync.cache")

Loader = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    value: Any
    fetched_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    joined: int = 0
    retries: int = 0


def cache_key(endpoint: str, params: Mapping[str, Any] | None = None) -> str:
    """Build the cache key for an endpoint and its normalized parameters."""
    cleaned = sorted(
        (str(key), str(value))
        for key, value in (params or {}).items()
        if value is not None
    )
    if not cleaned:
        return endpoint
    return f"{endpoint}?{urlencode(cleaned)}"


class RequestCache:
    """
    Memoize read requests for ``ttl`` seconds and share in-flight calls per key.

    Every caller receives its own deep copy of the payload, so one reader mutating
    its result never affects another reader or the stored entry.

    Example:
        cache = RequestCache(ttl=30.0)
        key = cache_key("/dashboard", {"email": email})
        payload = await cache.request(key, lambda: client.get_dashboard(email))
    """

    def __init__(
        self,
        ttl: float = 30.0,
        *,
        retry_backoff: float = 1.0,
        default_retries: int = 2,
        time_provider: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.ttl = ttl
        self.retry_backoff = retry_backoff
        self.default_retries = default_retries
        self._time_provider = time_provider or time.time
        self._sleep = sleep or asyncio.sleep
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, tuple[asyncio.Future[Any], int]] = {}
        # Bumped by every invalidation; loads started before it are not stored.
        self._epoch = 0
        self.stats = CacheStats()

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_fresh(entry)

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def request(
        self,
        key: str,
        loader: Loader,
        use_cache: bool = True,
        retries: int | None = None,
    ) -> Any:
        if use_cache:
            entry = self._entries.get(key)
            if entry is not None:
                if self._is_fresh(entry):
                    self.stats.hits += 1
                    LOGGER.debug("Cache hit for %s", key)
                    return copy.deepcopy(entry.value)
                del self._entries[key]

        pending = self._in_flight.get(key)
        # A forced reload never joins a load that started before the last invalidation.
        if pending is not None and (use_cache or pending[1] == self._epoch):
            self.stats.joined += 1
            LOGGER.debug("Joining in-flight request for %s", key)
            return copy.deepcopy(await asyncio.shield(pending[0]))

        self.stats.misses += 1
        resolved_retries = self.default_retries if retries is None else retries
        task = asyncio.ensure_future(
            self._load(key, loader, use_cache, resolved_retries, self._epoch)
        )
        self._in_flight[key] = (task, self._epoch)
        return copy.deepcopy(await asyncio.shield(task))

    def invalidate(self, fragment: str | None = None) -> int:
        """Drop entries whose key contains ``fragment`` (all entries when omitted)."""
        self._epoch += 1
        if fragment is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            stale = [key for key in self._entries if fragment in key]
            for key in stale:
                del self._entries[key]
            removed = len(stale)
        LOGGER.debug("Invalidated %s cache entries (fragment=%s)", removed, fragment)
        return removed

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._time_provider() - entry.fetched_at <= self.ttl

    async def _load(
        self,
        key: str,
        loader: Loader,
        use_cache: bool,
        retries: int,
        epoch: int,
    ) -> Any:
        attempts = 0
        try:
            while True:
                try:
                    result = await loader()
                    break
                except AsyncTransientApiError as exc:
                    attempts += 1
                    if attempts > retries:
                        raise
                    self.stats.retries += 1
                    LOGGER.info(
                        "Transient failure for %s (attempt %s/%s): %s",
                        key,
                        attempts,
                        retries,
                        exc,
                    )
                    await self._sleep(self.retry_backoff)
            if use_cache and epoch == self._epoch:
                self._entries[key] = CacheEntry(
                    value=copy.deepcopy(result), fetched_at=self._time_provider()
                )
            return result
        finally:
            current = self._in_flight.get(key)
            if current is not None and current[1] == epoch:
                del self._in_flight[key]
