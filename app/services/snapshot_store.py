"""Reachline — Daily Snapshot Store.

All reads and writes of `account_daily_snapshot` go through here. Every
query is scoped by the account; writes use the tenant-safe conflict key.
"""

from datetime import date, datetime
from typing import Dict, List, Mapping, Optional, Set

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.core.logging import get_logger
from app.core.parsing import to_finite_number_or_null, to_finite_number_or_zero
from app.models.insight_models import AccountRef, DayBucket
from app.models.snapshot_models import DailySnapshot, SnapshotSource, utcnow

logger = get_logger("snapshot.store")

CONFLICT_KEY = ("user_id", "ig_user_id", "page_id", "day")
UPDATE_COLUMNS = (
    "ig_account_id",
    "reach",
    "impressions",
    "total_interactions",
    "accounts_engaged",
    "source_used",
    "wrote_at",
)


class SnapshotStore:
    """Async access to per-account daily snapshot rows."""

    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def get_day(self, account: AccountRef, day: date) -> Optional[DailySnapshot]:
        async with self._sessions() as session:
            result = await session.exec(
                select(DailySnapshot)
                .where(
                    DailySnapshot.ig_account_id == account.account_id,
                    DailySnapshot.day == day,
                )
                .limit(1)
            )
            return result.first()

    async def get_range(self, account: AccountRef, start: date, end: date) -> List[DailySnapshot]:
        async with self._sessions() as session:
            result = await session.exec(
                select(DailySnapshot)
                .where(
                    DailySnapshot.ig_account_id == account.account_id,
                    DailySnapshot.day >= start,
                    DailySnapshot.day <= end,
                )
                .order_by(DailySnapshot.day)  # type: ignore
            )
            return list(result.all())

    async def complete_days(self, account: AccountRef, start: date, end: date) -> Set[date]:
        """Days in [start, end] whose stored row already has a non-null reach."""
        rows = await self.get_range(account, start, end)
        return {row.day for row in rows if row.reach is not None}

    async def upsert(
        self,
        account: AccountRef,
        buckets: Mapping[date, DayBucket],
        source: SnapshotSource,
        wrote_at: Optional[datetime] = None,
    ) -> int:
        """Insert-or-update one row per day. Returns the number of rows written.

        Last write wins on the conflict key. Callers that must not replace a
        complete row check `complete_days` first.
        """
        if not buckets:
            return 0
        if not account.account_id or not account.owner_user_id or not account.ig_user_id:
            logger.warning(
                "Skipping snapshot upsert: incomplete account scope",
                extra={"account_id": account.account_id},
            )
            return 0

        wrote_at = wrote_at or utcnow()
        payload: List[Dict[str, object]] = [
            {
                "ig_account_id": account.account_id,
                "user_id": account.owner_user_id,
                "ig_user_id": account.ig_user_id,
                "page_id": account.page_id or "",
                "day": day,
                "reach": to_finite_number_or_null(bucket.reach),
                "impressions": to_finite_number_or_zero(bucket.impressions),
                "total_interactions": to_finite_number_or_zero(bucket.total_interactions),
                "accounts_engaged": to_finite_number_or_zero(bucket.accounts_engaged),
                "source_used": source.value,
                "wrote_at": wrote_at,
            }
            for day, bucket in sorted(buckets.items())
        ]

        async with self._sessions() as session:
            dialect = session.bind.dialect.name
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(DailySnapshot.__table__).values(payload)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(CONFLICT_KEY),
                set_={col: stmt.excluded[col] for col in UPDATE_COLUMNS},
            )
            await session.execute(stmt)
            await session.commit()

        logger.info(
            f"Upserted {len(payload)} snapshot row(s) source={source.value} "
            f"days={[p['day'].isoformat() for p in payload]}",
            extra={"account_id": account.account_id},
        )
        return len(payload)
