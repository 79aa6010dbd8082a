"""Reachline — Daily Snapshot & Audit Models.

`account_daily_snapshot` is the system of record for per-day account
metrics. A row whose `reach` is non-null is complete and is never
overwritten by a less authoritative source; a null `reach` marks a
placeholder eligible for repair or backfill.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotSource(str, Enum):
    """Provenance tag written with every snapshot row."""

    GRAPH_SEED = "graph_seed"
    BACKFILL_GRAPH = "backfill_graph"
    PREWARM = "prewarm"
    REPAIR = "repair"
    CRON_PREWARM = "cron_prewarm"


class DailySnapshot(SQLModel, table=True):
    """One UTC day of aggregate metrics for one Instagram account.

    The unique constraint is the upsert conflict key. It carries the owner,
    the platform user and the page so a write for one account can never land
    on another account's row even when `day` values collide.
    """

    __tablename__ = "account_daily_snapshot"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "ig_user_id",
            "page_id",
            "day",
            name="uq_account_daily_snapshot_day",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    ig_account_id: str = Field(index=True, description="ig_accounts.id")
    user_id: str = Field(index=True, description="Owning user")
    ig_user_id: str = Field(description="Instagram business account id")
    page_id: str = Field(default="", description="Facebook page id")
    day: date = Field(index=True, description="UTC calendar day")
    reach: Optional[int] = Field(default=None, description="Null = not yet resolved")
    impressions: int = Field(default=0)
    total_interactions: int = Field(default=0)
    accounts_engaged: int = Field(default=0)
    source_used: str = Field(default=SnapshotSource.GRAPH_SEED.value)
    wrote_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class AuditKind(str, Enum):
    REPAIR = "repair"
    PREWARM = "prewarm"


class AuditEvent(SQLModel, table=True):
    """Best-effort audit trail of repair and prewarm runs.

    Repair throttling reads it back, so a missing row only ever makes the
    throttle more permissive.
    """

    __tablename__ = "audit_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True, description="repair | prewarm")
    user_id: str = Field(index=True)
    ig_account_id: Optional[str] = Field(default=None)
    action: str = Field(index=True, description="Repair action or prewarm mode")
    reason: Optional[str] = Field(default=None)
    ok: bool = Field(default=True)
    skipped: Optional[str] = Field(default=None)
    dry_run: bool = Field(default=False)
    details_json: str = Field(default="{}")
    took_ms: Optional[int] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )
