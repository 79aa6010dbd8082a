"""Reachline — Insight Pipeline Schemas (not persisted)."""

from datetime import date
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel


class AccountRef(BaseModel):
    """Scope of every query and write: one connected account of one user."""

    account_id: str
    owner_user_id: str
    ig_user_id: str
    page_id: str = ""


class MetricPoint(BaseModel):
    """One normalized series entry. `value` is None when upstream gave nothing usable."""

    day: date
    value: Optional[int] = None


class FetchResult(BaseModel):
    """Merged raw metric entries for a fetched day window."""

    since: date
    until: date
    series: Dict[str, List[MetricPoint]] = {}
    totals: Dict[str, Optional[int]] = {}
    totals_ok: bool = False
    fallback_used: bool = False
    time_series_metrics: List[str] = []
    chunks: List[Tuple[date, date]] = []


class DayBucket(BaseModel):
    """Aggregated metrics for one day."""

    reach: Optional[int] = None
    impressions: int = 0
    total_interactions: int = 0
    accounts_engaged: int = 0


class TrendPoint(BaseModel):
    """Caller-facing point; one per day of the requested window."""

    date: str
    reach: Optional[int] = None
    impressions: int = 0
    interactions: int = 0
    engaged_accounts: int = 0


class TotalValue(BaseModel):
    value: Optional[int] = None


class InsightTotal(BaseModel):
    name: str
    total_value: TotalValue = TotalValue()


class EnsureResult(BaseModel):
    """Outcome of ensuring a single day's snapshot."""

    wrote: bool
    reason: Optional[str] = None
    day: Optional[str] = None
    chosen_day: Optional[str] = None
    available_days: List[str] = []
    fallback_used: bool = False
    totals_ok: Optional[bool] = None


class BackfillResult(BaseModel):
    inserted: int = 0
    skipped: int = 0
    missing: List[str] = []
    skipped_no_data: List[str] = []
    chunks: List[Tuple[str, str]] = []
