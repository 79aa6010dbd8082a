"""Reachline — Day-Bucket Aggregator.

Merges metric series keyed by end-of-day timestamp into one record per day,
and pads a bucket map into a fixed-length point series.
"""

from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping

from app.core.dates import iter_days
from app.core.metric_registry import FIELD_SOURCES
from app.models.insight_models import DayBucket, MetricPoint, TrendPoint
from app.models.snapshot_models import DailySnapshot


def merge_series(series: Mapping[str, Iterable[MetricPoint]]) -> Dict[date, DayBucket]:
    """Union of all observed days; a missing metric leaves its field at the default."""
    by_metric_day: Dict[str, Dict[date, object]] = {}
    days: set[date] = set()
    for name, points in series.items():
        per_day = by_metric_day.setdefault(name, {})
        for point in points:
            days.add(point.day)
            per_day[point.day] = point.value

    buckets: Dict[date, DayBucket] = {}
    for day in sorted(days):
        bucket = DayBucket()
        for field, sources in FIELD_SOURCES.items():
            for metric in sources:
                per_day = by_metric_day.get(metric)
                if per_day is None or day not in per_day:
                    continue
                value = per_day[day]
                if value is None and field != "reach":
                    value = 0
                setattr(bucket, field, value)
                break
        buckets[day] = bucket
    return buckets


def bucket_from_snapshot(row: DailySnapshot) -> DayBucket:
    return DayBucket(
        reach=row.reach,
        impressions=row.impressions or 0,
        total_interactions=row.total_interactions or 0,
        accounts_engaged=row.accounts_engaged or 0,
    )


def to_point(day: date, bucket: DayBucket | None) -> TrendPoint:
    bucket = bucket or DayBucket()
    return TrendPoint(
        date=day.isoformat(),
        reach=bucket.reach,
        impressions=bucket.impressions,
        interactions=bucket.total_interactions,
        engaged_accounts=bucket.accounts_engaged,
    )


def pad_points(buckets: Mapping[date, DayBucket], until: date, days: int) -> List[TrendPoint]:
    """Exactly `days` points covering [until-days+1, until]; absent days are zero/null."""
    start = until - timedelta(days=days - 1)
    return [to_point(day, buckets.get(day)) for day in iter_days(start, until)]
