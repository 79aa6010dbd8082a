"""Reachline — Backfill Planner.

Finds the days in a lookback window that have no complete snapshot, fetches
only the span between the oldest and newest of them, and writes the days
Graph actually returned. Today is never a backfill target.
"""

from datetime import date
from typing import List, Optional

from app.connectors.instagram.aggregator import merge_series
from app.connectors.instagram.fetcher import InsightsFetcher
from app.core.dates import iter_days, today_utc, window_for
from app.core.logging import get_logger
from app.models.insight_models import AccountRef, BackfillResult
from app.models.snapshot_models import SnapshotSource
from app.services.snapshot_store import SnapshotStore

logger = get_logger("snapshot.backfill")


class BackfillPlanner:
    def __init__(self, store: SnapshotStore, fetcher: InsightsFetcher):
        self.store = store
        self.fetcher = fetcher

    async def plan(
        self, account: AccountRef, lookback_days: int, today: Optional[date] = None
    ) -> List[date]:
        """Missing = no stored row, or a stored row with null reach."""
        today = today or today_utc()
        start, end = window_for(lookback_days, today)
        complete = await self.store.complete_days(account, start, end)
        return [d for d in iter_days(start, end) if d != today and d not in complete]

    async def execute(self, account: AccountRef, token: str, missing_days: List[date]) -> BackfillResult:
        if not missing_days:
            return BackfillResult()

        days = sorted(set(missing_days))
        since, until = days[0], days[-1]
        fetched = await self.fetcher.fetch(account, token, since, until)
        buckets = merge_series(fetched.series)

        # Re-check right before writing: the conflict key alone cannot
        # express "only if reach is still null".
        complete_now = await self.store.complete_days(account, since, until)
        rows = {d: buckets[d] for d in days if d in buckets and d not in complete_now}
        skipped_no_data = [d for d in days if d not in buckets]

        inserted = await self.store.upsert(account, rows, SnapshotSource.BACKFILL_GRAPH)
        if skipped_no_data:
            logger.info(
                f"Graph returned no data for {len(skipped_no_data)} backfill day(s)",
                extra={"account_id": account.account_id},
            )
        return BackfillResult(
            inserted=inserted,
            missing=[d.isoformat() for d in skipped_no_data],
            skipped_no_data=[d.isoformat() for d in skipped_no_data],
            chunks=[(a.isoformat(), b.isoformat()) for a, b in fetched.chunks],
        )

    async def run(
        self,
        account: AccountRef,
        token: str,
        lookback_days: int,
        today: Optional[date] = None,
    ) -> BackfillResult:
        today = today or today_utc()
        missing = await self.plan(account, lookback_days, today)
        window_len = lookback_days - 1  # today is never counted
        if not missing:
            return BackfillResult(skipped=window_len)
        result = await self.execute(account, token, missing)
        result.skipped = window_len - len(missing)
        return result
