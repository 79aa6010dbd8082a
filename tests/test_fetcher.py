from __future__ import annotations

import asyncio
from datetime import date, timedelta

import httpx
import pytest

from app.connectors.instagram.aggregator import merge_series, pad_points
from app.connectors.instagram.fetcher import InsightsFetcher, parse_series, parse_totals
from app.core.errors import GraphMetricRejectedError, GraphRateLimitError, GraphTokenError
from app.models.insight_models import AccountRef, MetricPoint
from conftest import FakeGraph, metrics_row

ACCOUNT = AccountRef(account_id="acct-1", owner_user_id="user-1", ig_user_id="1789")


def _fetch(graph: FakeGraph, since: date, until: date, account: AccountRef = ACCOUNT):
    async def go():
        async with graph.client() as client:
            return await InsightsFetcher(client).fetch(account, "user-token", since, until)

    return asyncio.run(go())


def test_fetch_chunks_95_days_into_four_sequential_calls():
    start = date(2024, 1, 1)
    end = start + timedelta(days=94)
    graph = FakeGraph(days={d: metrics_row() for d in (start, start + timedelta(days=40), end)})

    result = _fetch(graph, start, end)

    assert [c[1] - c[0] + timedelta(days=1) for c in result.chunks] == [timedelta(days=n) for n in (30, 30, 30, 5)]
    assert graph.series_calls == 4
    assert graph.totals_calls == 4
    assert {p.day for p in result.series["reach"]} == {start, start + timedelta(days=40), end}


def test_metric_fallback_is_used_once_and_carried_to_later_chunks():
    start = date(2024, 1, 1)
    end = start + timedelta(days=40)
    graph = FakeGraph(days={start: metrics_row(reach=7)}, reject_metrics={"views"})

    result = _fetch(graph, start, end)

    # chunk 1: primary rejected + fallback; chunk 2: fallback only
    assert graph.series_calls == 3
    assert result.fallback_used is True
    assert result.time_series_metrics == ["reach"]
    assert result.series["reach"][0].value == 7


def test_metric_fallback_never_retries_twice():
    graph = FakeGraph(days={date(2024, 1, 1): metrics_row()}, reject_metrics={"reach"})

    with pytest.raises(GraphMetricRejectedError):
        _fetch(graph, date(2024, 1, 1), date(2024, 1, 2))
    assert graph.series_calls == 2


def test_totals_failure_degrades_to_null():
    day = date(2024, 1, 1)
    graph = FakeGraph(days={day: metrics_row(reach=50)}, fail_totals=True)

    result = _fetch(graph, day, day)

    assert result.totals_ok is False
    assert result.totals == {"total_interactions": None, "accounts_engaged": None, "profile_views": None}
    assert merge_series(result.series)[day].reach == 50


def test_totals_are_summed_per_window():
    d1, d2 = date(2024, 1, 1), date(2024, 1, 2)
    graph = FakeGraph(days={d1: metrics_row(interactions=4), d2: metrics_row(interactions=6)})

    result = _fetch(graph, d1, d2)

    assert result.totals_ok is True
    assert result.totals["total_interactions"] == 10


def test_rate_limit_propagates_without_retry():
    graph = FakeGraph(rate_limited=True)

    with pytest.raises(GraphRateLimitError):
        _fetch(graph, date(2024, 1, 1), date(2024, 1, 1))
    assert graph.series_calls == 1


def test_page_token_is_resolved_once_and_used_for_insights():
    graph = FakeGraph(days={date(2024, 1, 1): metrics_row()})
    account = ACCOUNT.model_copy(update={"page_id": "555"})

    _fetch(graph, date(2024, 1, 1), date(2024, 1, 1), account=account)

    assert graph.requests[0].url.path.endswith("/555")
    assert all(r.url.params["access_token"] == "page-token" for r in graph.insight_requests())


def test_page_token_failure_is_fatal():
    class NoTokenGraph(FakeGraph):
        def handler(self, request):
            if not request.url.path.endswith("/insights"):
                self.requests.append(request)
                return httpx.Response(400, json={"error": {"code": 10, "message": "Permission denied"}})
            return super().handler(request)

    graph = NoTokenGraph()
    with pytest.raises(GraphTokenError):
        _fetch(graph, date(2024, 1, 1), date(2024, 1, 1), account=ACCOUNT.model_copy(update={"page_id": "555"}))
    assert graph.series_calls == 0


def test_parse_series_normalizes_bad_values():
    data = [
        {"name": "reach", "values": [
            {"end_time": "2024-01-01T07:00:00+0000", "value": "NaN"},
            {"end_time": "2024-01-02T07:00:00+0000", "value": 12.9},
            {"end_time": None, "value": 5},
        ]},
        {"name": "views", "values": [{"end_time": "2024-01-01T07:00:00+0000", "value": None}]},
        "junk",
    ]
    series = parse_series(data)
    assert [p.value for p in series["reach"]] == [None, 12]
    assert series["views"][0].value == 0


def test_parse_totals_prefers_metric_level_total_value():
    totals = parse_totals([
        {"name": "accounts_engaged", "total_value": {"value": 30}, "values": [{"value": 1}]},
        {"name": "total_interactions", "values": [{"total_value": {"value": 2}}, {"total_value": {"value": 3}}]},
    ])
    assert totals == {"accounts_engaged": 30, "total_interactions": 5}


def test_merge_series_is_a_union_of_days():
    d1, d2, d3 = date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)
    buckets = merge_series({
        "reach": [MetricPoint(day=d1, value=10)],
        "views": [MetricPoint(day=d2, value=20)],
        "total_interactions": [MetricPoint(day=d3, value=None)],
    })
    assert sorted(buckets) == [d1, d2, d3]
    assert buckets[d1].reach == 10 and buckets[d1].impressions == 0
    assert buckets[d2].reach is None and buckets[d2].impressions == 20
    assert buckets[d3].total_interactions == 0


def test_impressions_fall_back_to_profile_views():
    day = date(2024, 1, 1)
    buckets = merge_series({"profile_views": [MetricPoint(day=day, value=4)]})
    assert buckets[day].impressions == 4


@pytest.mark.parametrize("days", [1, 7, 30, 365])
def test_pad_points_always_returns_exactly_n_points(days):
    until = date(2024, 6, 15)
    buckets = merge_series({"reach": [MetricPoint(day=until, value=1)]})

    points = pad_points(buckets, until, days)

    assert len(points) == days
    assert points[-1].date == "2024-06-15" and points[-1].reach == 1
    if days > 1:
        assert points[0].reach is None and points[0].impressions == 0
