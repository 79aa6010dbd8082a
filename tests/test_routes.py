from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from app.api.deps import get_coalescer, get_graph_client, get_sessions
from app.core.dates import today_utc
from app.main import app
from app.models.snapshot_models import AuditEvent
from app.services.coalescer import RequestCoalescer, ResponseCache
from app.services.repair import RepairService
from conftest import FakeGraph, metrics_row, seed_account

USER = {"X-User-Id": "user-1"}


class Harness:
    def __init__(self, sessions):
        self.sessions = sessions
        self.graph = FakeGraph()
        self.coalescer = RequestCoalescer(ResponseCache())
        self.client = TestClient(app)


@pytest.fixture
def api(sessions):
    harness = Harness(sessions)
    app.dependency_overrides[get_sessions] = lambda: harness.sessions
    app.dependency_overrides[get_graph_client] = lambda: harness.graph.client()
    app.dependency_overrides[get_coalescer] = lambda: harness.coalescer
    yield harness
    app.dependency_overrides.clear()


async def _audit_events(sessions):
    async with sessions() as session:
        result = await session.exec(select(AuditEvent))
        return list(result.all())


def test_health(api):
    response = api.client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "reachline"


def test_read_requires_a_logged_in_user(api):
    response = api.client.get("/api/instagram/daily-snapshot")
    assert response.status_code == 401
    assert response.json() == {"ok": False, "error": "not_logged_in"}


def test_read_without_connected_account_is_404(api):
    response = api.client.get("/api/instagram/daily-snapshot", headers=USER)
    assert response.status_code == 404
    assert response.json()["error"] == "no_ig_account"


def test_explicit_account_of_another_user_is_rejected(api, account):
    response = api.client.get(
        "/api/instagram/daily-snapshot",
        params={"ig_account_id": account.account_id},
        headers={"X-User-Id": "user-2"},
    )
    assert response.status_code == 404
    assert response.json()["error"] == "ig_account_not_found"


def test_read_is_cached_and_supports_conditional_requests(api, account):
    api.graph.days = {today_utc(): metrics_row(reach=70)}

    first = api.client.get("/api/instagram/daily-snapshot", params={"days": 7}, headers=USER)
    second = api.client.get("/api/instagram/daily-snapshot", params={"days": 7}, headers=USER)
    conditional = api.client.get(
        "/api/instagram/daily-snapshot",
        params={"days": 7},
        headers={**USER, "If-None-Match": first.headers["ETag"]},
    )

    assert first.status_code == 200
    body = first.json()
    assert len(body["points"]) == 7
    assert body["points"][-1]["reach"] == 70
    assert first.headers["X-Cache"] == "miss"
    assert second.headers["X-Cache"] == "hit"
    assert second.json() == body
    assert conditional.status_code == 304
    assert api.graph.series_calls == 1


def test_rate_limited_read_is_429_with_retry_after(api, account):
    api.graph.rate_limited = True

    response = api.client.get("/api/instagram/daily-snapshot", headers=USER)

    assert response.status_code == 429
    assert response.json()["error"] == "rate_limited"
    assert response.headers["Retry-After"] == "120"


def test_snapshot_write_uses_cookie_token_and_invalidates_trend_cache(api, account):
    api.graph.days = {today_utc(): metrics_row(reach=12)}
    api.client.cookies.set("ig_access_token", "cookie-token")
    api.client.get("/api/instagram/daily-snapshot", headers=USER)

    written = api.client.post("/api/instagram/daily-snapshot", json={}, headers=USER)
    reread = api.client.get("/api/instagram/daily-snapshot", headers=USER)

    assert written.status_code == 200
    assert written.json()["ok"] is True and written.json()["wrote"] is True
    assert written.json()["credential_source"] == "cookie"
    assert api.graph.insight_requests()[-1].url.params["access_token"] == "cookie-token"
    assert reread.headers["X-Cache"] == "miss"


def test_snapshot_write_surfaces_graph_failure(api, account):
    api.graph.fail_all = True

    response = api.client.post("/api/instagram/daily-snapshot", headers=USER)

    assert response.status_code == 502
    assert response.json()["error"] == "graph_fetch_failed"


def test_backfill_runs_on_the_stored_token(api, account):
    yesterday = today_utc() - timedelta(days=1)
    api.graph.days = {yesterday: metrics_row(reach=9)}

    response = api.client.post("/api/instagram/daily-snapshot/backfill", json={"days": 7}, headers=USER)

    assert response.status_code == 200
    assert response.json()["inserted"] == 1
    assert all(r.url.params["access_token"] == "user-token" for r in api.graph.insight_requests())


def test_backfill_without_any_token_is_401(api):
    asyncio.run(seed_account(api.sessions, token=None))

    response = api.client.post("/api/instagram/daily-snapshot/backfill", json={"days": 7}, headers=USER)

    assert response.status_code == 401
    assert response.json()["error"] == "missing_cookie:ig_access_token"
    assert api.graph.requests == []


def test_backfill_days_are_clamped(api, account):
    api.client.cookies.set("ig_access_token", "cookie-token")
    response = api.client.post("/api/instagram/daily-snapshot/backfill", json={"days": 500}, headers=USER)

    body = response.json()
    assert response.status_code == 200
    assert body["days"] == 120
    assert len(body["chunks"]) == 4
    assert body["inserted"] == 0


def test_repair_rejects_unknown_action(api):
    response = api.client.post("/api/repair", json={"action": "reboot"}, headers=USER)

    assert response.status_code == 400
    assert response.json() == {
        "ok": False,
        "error": "invalid_action",
        "valid": ["unlock_thumbs", "snapshot_today", "fix_owner_card"],
    }


def test_repair_requires_login_before_validating_action(api):
    response = api.client.post("/api/repair", json={"action": "reboot"})
    assert response.status_code == 401


def test_repair_dry_run_fix_owner_card_is_audited(api):
    response = api.client.post("/api/repair", json={"action": "fix_owner_card", "dry_run": True}, headers=USER)

    assert response.status_code == 200
    assert response.json()["skipped"] == "no_cards"
    events = asyncio.run(_audit_events(api.sessions))
    assert [(e.action, e.ok, e.dry_run) for e in events] == [("fix_owner_card", True, True)]


def test_repair_snapshot_today_credential_failure_is_audited(api):
    asyncio.run(seed_account(api.sessions, token=None))

    response = api.client.post("/api/repair", json={"action": "snapshot_today"}, headers=USER)

    assert response.status_code == 401
    assert response.json()["error"] == "missing_token"
    events = asyncio.run(_audit_events(api.sessions))
    assert [(e.action, e.ok, e.reason) for e in events] == [("snapshot_today", False, "missing_token")]
    assert events[0].ig_account_id is None
    assert api.graph.requests == []


def test_repair_unexpected_failure_is_audited_and_surfaces_as_500(api, monkeypatch):
    async def broken(self, user_id, dry_run=False):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(RepairService, "fix_owner_card", broken)
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post("/api/repair", json={"action": "fix_owner_card"}, headers=USER)

    assert response.status_code == 500
    events = asyncio.run(_audit_events(api.sessions))
    assert [(e.action, e.ok, e.reason) for e in events] == [("fix_owner_card", False, "RuntimeError")]


def test_cron_prewarm_requires_a_secret(api, account):
    response = api.client.post("/api/cron/prewarm", json={"ig_account_id": account.account_id})
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"

    wrong = api.client.post(
        "/api/cron/prewarm", json={"ig_account_id": account.account_id}, headers={"x-cron-secret": "nope"}
    )
    assert wrong.status_code == 401


def test_cron_prewarm_with_secret_writes_snapshot(api, account):
    api.graph.days = {today_utc(): metrics_row()}

    response = api.client.post(
        "/api/cron/prewarm",
        json={"ig_account_id": account.account_id},
        headers={"x-cron-secret": "test-cron-secret"},
    )

    assert response.status_code == 200
    assert response.json()["snapshot"]["did"] is True


def test_cron_prewarm_without_account_id_is_400(api):
    response = api.client.post("/api/cron/prewarm", json={}, headers={"x-cron-secret": "test-cron-secret"})
    assert response.status_code == 400
    assert response.json()["error"] == "missing_body:ig_account_id"


def test_prewarm_sets_throttle_cookie_and_then_skips(api, account):
    api.graph.days = {today_utc(): metrics_row()}

    first = api.client.post("/api/prewarm", json={"mode": "full", "reason": "login"}, headers=USER)
    second = api.client.post("/api/prewarm", json={"mode": "full"}, headers=USER)

    assert first.status_code == 200
    assert "snapshot" in first.json()["did"]
    assert "prewarm_at" in first.cookies
    assert second.json()["skipped"] == "throttled"


def test_prewarm_for_user_without_account_answers_200(api):
    asyncio.run(seed_account(api.sessions, user_id="someone-else"))

    response = api.client.post("/api/prewarm", json={}, headers=USER)

    assert response.status_code == 200
    assert response.json()["skipped"] == "no_ig_account"
