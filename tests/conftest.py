from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import date
from typing import Dict, Iterable, List, Optional

# Settings are read at import time
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'reachline-test.db')}"
)
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest

from app.connectors.instagram.client import GraphClient
from app.core.dates import day_start_unix
from app.database import build_engine, build_session_factory, init_db
from app.models.account_models import IGAccount, IGAccountToken
from app.models.insight_models import AccountRef
from app.services.accounts import to_ref

GRAPH_BASE = "https://graph.test/v24.0"


class FakeGraph:
    """In-memory Graph insights endpoint for httpx.MockTransport.

    `days` maps a day to its metric values; every metric present for a day
    is returned for that day. Entries carry an `end_time` on the same UTC day.
    """

    def __init__(
        self,
        days: Optional[Dict[date, Dict[str, int]]] = None,
        reject_metrics: Iterable[str] = (),
        rate_limited: bool = False,
        fail_totals: bool = False,
        fail_all: bool = False,
    ):
        self.days = days or {}
        self.reject_metrics = set(reject_metrics)
        self.rate_limited = rate_limited
        self.fail_totals = fail_totals
        self.fail_all = fail_all
        self.requests: List[httpx.Request] = []

    # ── Introspection ──

    def insight_requests(self, metric_type: Optional[str] = None) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path.endswith("/insights") and r.url.params.get("metric_type") == metric_type
        ]

    @property
    def series_calls(self) -> int:
        return len(self.insight_requests(None))

    @property
    def totals_calls(self) -> int:
        return len(self.insight_requests("total_value"))

    # ── Transport ──

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if not path.endswith("/insights"):
            return httpx.Response(200, json={"access_token": "page-token", "id": path.rsplit("/", 1)[-1]})
        if self.rate_limited:
            return httpx.Response(
                400, json={"error": {"code": 4, "message": "Application request limit reached"}}
            )
        if self.fail_all:
            return httpx.Response(400, json={"error": {"code": 10, "message": "Permission denied"}})

        metric_type = params.get("metric_type")
        metrics = params["metric"].split(",")
        if metric_type == "total_value" and self.fail_totals:
            return httpx.Response(400, json={"error": {"code": 10, "message": "Permission denied"}})
        if self.reject_metrics & set(metrics):
            return httpx.Response(
                400,
                json={"error": {"code": 100, "message": "(#100) metric[1] must be one of the following values"}},
            )

        since, until = int(params["since"]), int(params["until"])
        data = []
        for name in metrics:
            values = []
            for day, row in sorted(self.days.items()):
                if name not in row or not since <= day_start_unix(day) < until:
                    continue
                end_time = f"{day.isoformat()}T07:00:00+0000"
                if metric_type == "total_value":
                    values.append({"end_time": end_time, "total_value": {"value": row[name]}})
                else:
                    values.append({"end_time": end_time, "value": row[name]})
            data.append({"name": name, "period": "day", "values": values})
        return httpx.Response(200, json={"data": data})

    def client(self) -> GraphClient:
        return GraphClient(base_url=GRAPH_BASE, max_retries=1, transport=httpx.MockTransport(self.handler))


def metrics_row(reach: Optional[int] = 100, views: int = 200, interactions: int = 10, engaged: int = 5):
    row = {"views": views, "total_interactions": interactions, "accounts_engaged": engaged, "profile_views": 3}
    if reach is not None:
        row["reach"] = reach
    return row


@pytest.fixture
def sessions(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reachline.db'}")
    asyncio.run(init_db(engine))
    yield build_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def graph():
    return FakeGraph()


async def seed_account(
    sessions,
    user_id: str = "user-1",
    ig_user_id: str = "1789",
    page_id: str = "",
    token: Optional[str] = "user-token",
) -> AccountRef:
    async with sessions() as session:
        account = IGAccount(user_id=user_id, ig_user_id=ig_user_id, page_id=page_id)
        session.add(account)
        if token:
            session.add(IGAccountToken(user_id=user_id, ig_user_id=ig_user_id, access_token=token))
        await session.commit()
        await session.refresh(account)
        return to_ref(account)


@pytest.fixture
def account(sessions) -> AccountRef:
    return asyncio.run(seed_account(sessions))
