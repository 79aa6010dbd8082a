"""Reachline — Request Coalescer & Response Cache.

A process-wide, advisory view over expensive reads:

- `ResponseCache` is a bounded TTL map. Successful and rate-limited outcomes
  get different TTLs; the oldest insert is evicted first when full.
- `RequestCoalescer` makes concurrent identical reads share one computation.
  Late joiners await the same task; the in-flight entry is dropped as soon
  as the computation settles, success or failure.

Both live on the event loop thread and are mutated without locks. The
snapshot store stays the system of record; entries here only ever expire or
get invalidated, they are never corrected.
"""

import asyncio
import hashlib
import json
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from app.config import settings
from app.core.logging import get_logger

logger = get_logger("cache.coalescer")


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    DEGRADED = "degraded"  # served, never cached


class CachedResponse(BaseModel):
    kind: OutcomeKind
    status_code: int = 200
    payload: Dict[str, Any]
    etag: str = ""

    @property
    def cacheable(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.RATE_LIMITED)


class CacheEntry:
    __slots__ = ("key", "inserted_at", "ttl", "response")

    def __init__(self, key: str, inserted_at: float, ttl: float, response: CachedResponse):
        self.key = key
        self.inserted_at = inserted_at
        self.ttl = ttl
        self.response = response

    def age(self, now: float) -> float:
        return max(0.0, now - self.inserted_at)

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl


class CoalescedResult(BaseModel):
    response: CachedResponse
    cache: str  # hit | miss | joined
    age_s: float = 0.0
    not_modified: bool = False

    @property
    def retry_after(self) -> Optional[int]:
        """Remaining cooldown for a cached rate-limited outcome."""
        if self.response.kind != OutcomeKind.RATE_LIMITED:
            return None
        return self.response.payload.get("retry_after")


def make_etag(payload: Dict[str, Any]) -> str:
    blob = json.dumps(payload, sort_keys=True, default=str)
    return f'W/"{hashlib.sha256(blob.encode()).hexdigest()[:32]}"'


def build_cache_key(mode: str, account_id: str, page_id: str, day_range: str, token_fp: str) -> str:
    return ":".join((mode, account_id, page_id or "-", day_range, token_fp))


class ResponseCache:
    """Bounded TTL cache keyed by request identity."""

    def __init__(
        self,
        max_entries: int | None = None,
        success_ttl: float | None = None,
        rate_limited_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries or settings.cache_max_entries
        self.success_ttl = success_ttl if success_ttl is not None else settings.cache_success_ttl_s
        self.rate_limited_ttl = (
            rate_limited_ttl if rate_limited_ttl is not None else settings.cache_rate_limited_ttl_s
        )
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def ttl_for(self, kind: OutcomeKind) -> float:
        return self.rate_limited_ttl if kind == OutcomeKind.RATE_LIMITED else self.success_ttl

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self.clock()):
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, response: CachedResponse) -> CacheEntry:
        self._entries.pop(key, None)
        entry = CacheEntry(key, self.clock(), self.ttl_for(response.kind), response)
        self._entries[key] = entry
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cache entry {evicted}")
        return entry

    def invalidate_prefix(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for k in stale:
            del self._entries[k]
        return len(stale)


class RequestCoalescer:
    """Single-flight wrapper around a ResponseCache."""

    def __init__(self, cache: ResponseCache):
        self.cache = cache
        self._inflight: Dict[str, "asyncio.Task[CachedResponse]"] = {}
        self._joiners: Dict[str, int] = {}
        self.joined_total = 0

    @property
    def inflight_keys(self) -> int:
        return len(self._inflight)

    async def run(
        self,
        key: str,
        compute: Callable[[], Awaitable[CachedResponse]],
        if_none_match: str | None = None,
    ) -> CoalescedResult:
        entry = self.cache.get(key)
        if entry is not None:
            result = CoalescedResult(
                response=entry.response,
                cache="hit",
                age_s=entry.age(self.cache.clock()),
            )
            if entry.response.kind == OutcomeKind.RATE_LIMITED:
                remaining = max(0, int(entry.ttl - result.age_s))
                payload = {**entry.response.payload, "retry_after": remaining}
                result.response = entry.response.model_copy(update={"payload": payload})
        else:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._compute(key, compute))
                self._inflight[key] = task
                self._joiners[key] = 0
                status = "miss"
            else:
                self._joiners[key] += 1
                self.joined_total += 1
                status = "joined"
            # Shielded so one cancelled caller does not cancel the shared work
            response = await asyncio.shield(task)
            result = CoalescedResult(response=response, cache=status)

        result.not_modified = bool(
            if_none_match
            and result.response.kind == OutcomeKind.SUCCESS
            and if_none_match == result.response.etag
        )
        return result

    async def _compute(
        self, key: str, compute: Callable[[], Awaitable[CachedResponse]]
    ) -> CachedResponse:
        started = time.monotonic()
        try:
            response = await compute()
            if not response.etag:
                response.etag = make_etag(response.payload)
            if response.cacheable:
                self.cache.put(key, response)
            return response
        finally:
            self._inflight.pop(key, None)
            joined = self._joiners.pop(key, 0)
            logger.debug(
                f"Computation settled with {joined} joiner(s)",
                extra={"duration_ms": int((time.monotonic() - started) * 1000), "cache": "miss"},
            )


response_cache = ResponseCache()
coalescer = RequestCoalescer(response_cache)
