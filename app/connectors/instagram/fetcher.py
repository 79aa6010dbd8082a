"""Reachline — Graph Metric Fetcher.

The one place that turns "give me metrics for account X between day A and
day B" into Graph calls:

  page token → per ≤30-day chunk: time-series call (with one fallback)
             → totals call (best-effort)

Chunks are fetched strictly in order. A failing totals call never fails the
fetch; it only marks `totals_ok=False`.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.config import settings
from app.connectors.instagram.client import GraphClient
from app.core.dates import DayWindow, chunk_day_range, parse_end_time_day
from app.core.errors import GraphAPIError, GraphMetricRejectedError
from app.core.logging import get_logger
from app.core.metric_registry import (
    TIME_SERIES_FALLBACK,
    TIME_SERIES_PRIMARY,
    TOTAL_VALUE_FALLBACK,
    TOTAL_VALUE_METRICS,
    MetricType,
    get_metric,
)
from app.core.parsing import entry_value, to_finite_number_or_null, to_finite_number_or_zero
from app.models.insight_models import AccountRef, FetchResult, MetricPoint

logger = get_logger("instagram.fetcher")


def normalize_value(metric_name: str, raw: Any) -> Optional[int]:
    definition = get_metric(metric_name)
    if definition is None or definition.nullable:
        return to_finite_number_or_null(raw)
    return to_finite_number_or_zero(raw)


def parse_series(data: List[Dict[str, Any]]) -> Dict[str, List[MetricPoint]]:
    """Normalize a Graph `data` list into day-keyed points per metric."""
    series: Dict[str, List[MetricPoint]] = {}
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            continue
        name = item["name"]
        points = series.setdefault(name, [])
        values = item.get("values")
        for entry in values if isinstance(values, list) else []:
            day = parse_end_time_day(entry.get("end_time") if isinstance(entry, dict) else None)
            if day is None:
                continue
            points.append(MetricPoint(day=day, value=normalize_value(name, entry_value(entry))))
    return series


def parse_totals(data: List[Dict[str, Any]]) -> Dict[str, Optional[int]]:
    """Window totals per metric.

    Prefers the metric-level `total_value`; otherwise sums the per-day entries.
    """
    totals: Dict[str, Optional[int]] = {}
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            continue
        name = item["name"]
        top_level = item.get("total_value")
        if isinstance(top_level, dict):
            totals[name] = to_finite_number_or_zero(top_level.get("value"))
            continue
        values = item.get("values")
        entries = values if isinstance(values, list) else []
        totals[name] = sum(to_finite_number_or_zero(entry_value(e)) for e in entries)
    return totals


def _extend(target: Dict[str, List[MetricPoint]], source: Dict[str, List[MetricPoint]]) -> None:
    for name, points in source.items():
        target.setdefault(name, []).extend(points)


class InsightsFetcher:
    """Fetch time-series and total-value account metrics for a day window."""

    def __init__(self, client: GraphClient, max_window_days: int | None = None):
        self.client = client
        self.max_window_days = max_window_days or settings.graph_max_window_days

    async def resolve_page_token(self, account: AccountRef, user_token: str) -> str:
        """Page-scoped token for the account. Failure here is fatal for the fetch."""
        if not account.page_id:
            return user_token
        return await self.client.get_page_access_token(account.page_id, user_token)

    def plan_chunks(self, since: date, until: date) -> List[DayWindow]:
        return chunk_day_range(since, until, self.max_window_days)

    async def fetch(
        self,
        account: AccountRef,
        user_token: str,
        since: date,
        until: date,
        include_totals: bool = True,
    ) -> FetchResult:
        page_token = await self.resolve_page_token(account, user_token)
        chunks = self.plan_chunks(since, until)
        result = FetchResult(since=since, until=until, chunks=chunks)

        time_series_metrics: Sequence[str] = TIME_SERIES_PRIMARY
        totals_metrics: Sequence[str] = TOTAL_VALUE_METRICS
        totals: Dict[str, Optional[int]] = {}
        totals_ok = include_totals

        for chunk in chunks:
            data, time_series_metrics = await self._fetch_with_fallback(
                account.ig_user_id, chunk, page_token, time_series_metrics,
                TIME_SERIES_FALLBACK, None,
            )
            _extend(result.series, parse_series(data))

            if not include_totals:
                continue
            try:
                tv_data, totals_metrics = await self._fetch_with_fallback(
                    account.ig_user_id, chunk, page_token, totals_metrics,
                    TOTAL_VALUE_FALLBACK, MetricType.TOTAL_VALUE.value,
                )
            except GraphAPIError as e:
                totals_ok = False
                logger.warning(
                    f"Totals call failed for {chunk[0]}..{chunk[1]}; degrading to null: {e}",
                    extra={"account_id": account.account_id},
                )
                continue
            _extend(result.series, parse_series(tv_data))
            for name, value in parse_totals(tv_data).items():
                totals[name] = (totals.get(name) or 0) + (value or 0)

        result.fallback_used = list(time_series_metrics) != list(TIME_SERIES_PRIMARY)
        result.time_series_metrics = list(time_series_metrics)
        result.totals_ok = totals_ok
        result.totals = (
            {name: totals.get(name) for name in TOTAL_VALUE_METRICS}
            if totals_ok
            else {name: None for name in TOTAL_VALUE_METRICS}
        )
        logger.info(
            f"Fetched {sum(len(p) for p in result.series.values())} metric points "
            f"for {since}..{until} in {len(chunks)} chunk(s)",
            extra={"account_id": account.account_id},
        )
        return result

    async def _fetch_with_fallback(
        self,
        ig_user_id: str,
        chunk: DayWindow,
        token: str,
        metrics: Sequence[str],
        fallback: Sequence[str],
        metric_type: str | None,
    ) -> Tuple[List[Dict[str, Any]], Sequence[str]]:
        """One call, retried exactly once with the reduced list on metric rejection.

        Returns the data and the metric list that worked, so later chunks
        skip straight to it.
        """
        try:
            data = await self.client.fetch_insights(
                ig_user_id, metrics, chunk[0], chunk[1], token, metric_type=metric_type
            )
            return data, metrics
        except GraphMetricRejectedError as e:
            if list(metrics) == list(fallback):
                raise
            logger.warning(f"Metrics {','.join(metrics)} rejected ({e}); retrying with {','.join(fallback)}")
        data = await self.client.fetch_insights(
            ig_user_id, fallback, chunk[0], chunk[1], token, metric_type=metric_type
        )
        return data, fallback
