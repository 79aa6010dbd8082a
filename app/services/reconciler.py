"""Reachline — Snapshot Store Reconciler.

Decides per day whether the stored row is authoritative or has to be
(re)written from Graph. A stored non-null `reach` short-circuits before any
upstream call; that check is the main cost control of the pipeline.
"""

from datetime import date, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.connectors.instagram.aggregator import merge_series
from app.connectors.instagram.fetcher import InsightsFetcher
from app.core.dates import today_utc
from app.core.logging import get_logger
from app.models.insight_models import AccountRef, EnsureResult
from app.models.snapshot_models import SnapshotSource
from app.services.snapshot_store import SnapshotStore

logger = get_logger("snapshot.reconciler")


class SnapshotReconciler:
    def __init__(self, store: SnapshotStore, fetcher: InsightsFetcher):
        self.store = store
        self.fetcher = fetcher

    async def ensure_day(
        self,
        account: AccountRef,
        token: str,
        day: Optional[date] = None,
        source: SnapshotSource = SnapshotSource.PREWARM,
        allow_latest_fallback: bool = False,
    ) -> EnsureResult:
        """Make sure `day` (default: today) has a stored snapshot.

        Graph failures propagate as `GraphAPIError`. "Graph had nothing for
        the day" is not an error and comes back as `wrote=False`.

        With `allow_latest_fallback` the latest day Graph returned is written
        when the requested day is absent from the response.
        """
        day = day or today_utc()
        existing = await self.store.get_day(account, day)
        if existing is not None and existing.reach is not None:
            return EnsureResult(wrote=False, reason="already_exists", day=day.isoformat())

        fetched = await self.fetcher.fetch(account, token, day - timedelta(days=1), day)
        buckets = merge_series(fetched.series)
        available = sorted(buckets)
        available_iso = [d.isoformat() for d in available]

        if day in buckets:
            chosen = day
        elif allow_latest_fallback and available:
            # TODO: revisit once Graph's end_time day attribution is verified per timezone;
            # the silent fallback can hide a window off-by-one.
            chosen = available[-1]
            if chosen in await self.store.complete_days(account, chosen, chosen):
                return EnsureResult(
                    wrote=False,
                    reason="already_exists",
                    day=day.isoformat(),
                    chosen_day=chosen.isoformat(),
                    available_days=available_iso,
                )
        else:
            return EnsureResult(
                wrote=False,
                reason="no_graph_data_for_today",
                day=day.isoformat(),
                available_days=available_iso,
                fallback_used=fetched.fallback_used,
                totals_ok=fetched.totals_ok,
            )

        try:
            await self.store.upsert(account, {chosen: buckets[chosen]}, source)
        except SQLAlchemyError as e:
            logger.error(
                f"Snapshot upsert failed for {chosen}: {e}",
                extra={"account_id": account.account_id, "day": chosen.isoformat()},
            )
            return EnsureResult(
                wrote=False,
                reason="upsert_failed",
                day=day.isoformat(),
                chosen_day=chosen.isoformat(),
                available_days=available_iso,
            )

        return EnsureResult(
            wrote=True,
            day=day.isoformat(),
            chosen_day=chosen.isoformat(),
            available_days=available_iso,
            fallback_used=fetched.fallback_used,
            totals_ok=fetched.totals_ok,
        )
