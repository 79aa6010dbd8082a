"""Reachline — Trend Read Service.

Serves the padded daily point series for one account. Reads go store first:
when every past day of the window is already complete, Graph is not called
at all. Otherwise Graph fills the gaps, complete stored rows still win, and
the fetched past days are written through to the store.

Whole computations are wrapped in the request coalescer, so concurrent
identical reads share one Graph round trip.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.connectors.instagram.aggregator import bucket_from_snapshot, merge_series, pad_points
from app.connectors.instagram.fetcher import InsightsFetcher
from app.core.dates import iter_days, today_utc, window_for
from app.core.errors import GraphAPIError, GraphRateLimitError, graph_error_to_app_error
from app.core.logging import get_logger
from app.core.metric_registry import TOTAL_VALUE_METRICS
from app.core.redact import token_fingerprint
from app.models.insight_models import AccountRef, DayBucket, InsightTotal, TotalValue
from app.models.snapshot_models import SnapshotSource
from app.services.coalescer import (
    CachedResponse,
    CoalescedResult,
    OutcomeKind,
    RequestCoalescer,
    build_cache_key,
)
from app.services.snapshot_store import SnapshotStore

logger = get_logger("trend")


def clamp_days(days: Optional[int]) -> int:
    if days is None:
        return settings.trend_default_days
    return max(1, min(settings.trend_max_days, int(days)))


def insights_daily(totals: Dict[str, Optional[int]]) -> List[Dict[str, Any]]:
    return [
        InsightTotal(name=name, total_value=TotalValue(value=totals.get(name))).model_dump()
        for name in TOTAL_VALUE_METRICS
    ]


def _stored_totals(buckets: Dict[date, DayBucket]) -> Dict[str, Optional[int]]:
    # profile_views is never persisted, so the store cannot answer it
    return {
        "total_interactions": sum(b.total_interactions for b in buckets.values()),
        "accounts_engaged": sum(b.accounts_engaged for b in buckets.values()),
        "profile_views": None,
    }


class TrendService:
    def __init__(self, store: SnapshotStore, fetcher: InsightsFetcher, coalescer: RequestCoalescer):
        self.store = store
        self.fetcher = fetcher
        self.coalescer = coalescer

    def cache_key(self, account: AccountRef, token: str, start: date, end: date) -> str:
        return build_cache_key(
            "trend",
            account.account_id,
            account.page_id,
            f"{start.isoformat()}..{end.isoformat()}",
            token_fingerprint(token, settings.cache_key_salt),
        )

    async def read(
        self,
        account: AccountRef,
        token: str,
        days: Optional[int] = None,
        if_none_match: Optional[str] = None,
        today: Optional[date] = None,
    ) -> CoalescedResult:
        days = clamp_days(days)
        today = today or today_utc()
        start, end = window_for(days, today)
        key = self.cache_key(account, token, start, end)
        result = await self.coalescer.run(
            key,
            lambda: self.build(account, token, days, today),
            if_none_match=if_none_match,
        )
        logger.info(
            f"Trend read days={days} source={result.response.payload.get('points_source')}",
            extra={"account_id": account.account_id, "cache": result.cache},
        )
        return result

    async def build(self, account: AccountRef, token: str, days: int, today: date) -> CachedResponse:
        start, end = window_for(days, today)
        rows = await self.store.get_range(account, start, end)
        stored = {row.day: bucket_from_snapshot(row) for row in rows}
        complete = {day for day, bucket in stored.items() if bucket.reach is not None}
        past_days = [d for d in iter_days(start, end) if d != today]

        base = {"ok": True, "days": days, "range_start": start.isoformat(), "range_end": end.isoformat()}

        if all(d in complete for d in past_days):
            return CachedResponse(
                kind=OutcomeKind.SUCCESS,
                payload={
                    **base,
                    "points": [p.model_dump() for p in pad_points(stored, end, days)],
                    "points_source": "db",
                    "points_ok": True,
                    "insights_daily": insights_daily(_stored_totals(stored)),
                    "available_days": sorted(d.isoformat() for d in stored),
                },
            )

        try:
            fetched = await self.fetcher.fetch(account, token, start, end)
        except GraphRateLimitError as e:
            logger.warning(f"Trend read rate limited: {e}", extra={"account_id": account.account_id})
            return CachedResponse(
                kind=OutcomeKind.RATE_LIMITED,
                status_code=429,
                payload={
                    **base,
                    "ok": False,
                    "error": "rate_limited",
                    "retry_after": min(int(e.retry_after), int(self.coalescer.cache.rate_limited_ttl)),
                    "points": [p.model_dump() for p in pad_points(stored, end, days)],
                    "points_source": "db" if stored else "empty",
                    "points_ok": False,
                    "available_days": sorted(d.isoformat() for d in stored),
                },
            )
        except GraphAPIError as e:
            error = graph_error_to_app_error(e)
            logger.warning(
                f"Trend read degraded to stored points: {error.code}",
                extra={"account_id": account.account_id},
            )
            return CachedResponse(
                kind=OutcomeKind.DEGRADED,
                payload={
                    **base,
                    "points": [p.model_dump() for p in pad_points(stored, end, days)],
                    "points_source": "db" if stored else "empty",
                    "points_ok": False,
                    "upstream_error": error.code,
                    "insights_daily": insights_daily({}),
                    "available_days": sorted(d.isoformat() for d in stored),
                },
            )

        graph_buckets = {d: b for d, b in merge_series(fetched.series).items() if start <= d <= end}
        merged: Dict[date, DayBucket] = dict(stored)
        for day, bucket in graph_buckets.items():
            if day not in complete:
                merged[day] = bucket

        await self._write_through(account, graph_buckets, complete, today)

        if graph_buckets:
            source = "graph_series"
        elif stored:
            source = "db"
        else:
            source = "empty"
        return CachedResponse(
            kind=OutcomeKind.SUCCESS,
            payload={
                **base,
                "points": [p.model_dump() for p in pad_points(merged, end, days)],
                "points_source": source,
                "points_ok": True,
                "insights_daily": insights_daily(fetched.totals),
                "available_days": sorted(d.isoformat() for d in graph_buckets),
                "fallback_used": fetched.fallback_used,
                "totals_ok": fetched.totals_ok,
            },
        )

    async def _write_through(
        self,
        account: AccountRef,
        graph_buckets: Dict[date, DayBucket],
        complete: set[date],
        today: date,
    ) -> None:
        rows = {d: b for d, b in graph_buckets.items() if d != today and d not in complete}
        if not rows:
            return
        try:
            await self.store.upsert(account, rows, SnapshotSource.GRAPH_SEED)
        except SQLAlchemyError as e:
            logger.warning(
                f"Trend write-through failed for {len(rows)} day(s): {e}",
                extra={"account_id": account.account_id},
            )
