"""Reachline — Instagram Daily Snapshot Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from app.api.deps import (
    get_backfill,
    get_coalescer,
    get_reconciler,
    get_resolver,
    get_trend,
    get_user_id,
)
from app.config import settings
from app.core.errors import AppError, GraphAPIError, graph_error_to_app_error
from app.core.logging import get_logger
from app.models.snapshot_models import SnapshotSource
from app.services.accounts import AccountResolver, resolve_credentials
from app.services.backfill import BackfillPlanner
from app.services.coalescer import OutcomeKind, RequestCoalescer
from app.services.reconciler import SnapshotReconciler
from app.services.trend import TrendService

logger = get_logger("api.instagram")

router = APIRouter(prefix="/api/instagram", tags=["Instagram"])


# ── Request Models ──


class SnapshotRequest(BaseModel):
    """Body for POST /api/instagram/daily-snapshot."""

    ig_account_id: Optional[str] = None


class BackfillRequest(BaseModel):
    """Body for POST /api/instagram/daily-snapshot/backfill."""

    ig_account_id: Optional[str] = None
    days: Optional[int] = None
    """Lookback window in days, clamped to 1..120. Today is never backfilled."""

    model_config = {"json_schema_extra": {"examples": [{"days": 90}]}}


def _invalidate_trend(shared: RequestCoalescer, account_id: str) -> None:
    dropped = shared.cache.invalidate_prefix(f"trend:{account_id}:")
    if dropped:
        logger.info(f"Invalidated {dropped} cached trend read(s)", extra={"account_id": account_id})


# ── Endpoints ──


@router.get("/daily-snapshot")
async def read_daily_snapshot(
    request: Request,
    days: Optional[int] = Query(default=None),
    ig_account_id: Optional[str] = Query(default=None),
    if_none_match: Optional[str] = Header(default=None),
    user_id: Optional[str] = Depends(get_user_id),
    resolver: AccountResolver = Depends(get_resolver),
    trend: TrendService = Depends(get_trend),
):
    """Padded daily points for the last `days` days (default 7, max 365)."""
    creds = await resolve_credentials(
        resolver,
        user_id,
        request.cookies,
        requested_id=ig_account_id,
        cron_secret=request.headers.get("x-cron-secret"),
    )
    result = await trend.read(creds.account, creds.token, days, if_none_match=if_none_match)
    headers = {"X-Cache": result.cache, "ETag": result.response.etag}

    if result.not_modified:
        return Response(status_code=304, headers=headers)
    if result.response.kind == OutcomeKind.RATE_LIMITED:
        headers["Retry-After"] = str(result.retry_after or 0)
    return JSONResponse(
        result.response.payload, status_code=result.response.status_code, headers=headers
    )


@router.post("/daily-snapshot")
async def write_daily_snapshot(
    request: Request,
    body: SnapshotRequest | None = None,
    user_id: Optional[str] = Depends(get_user_id),
    resolver: AccountResolver = Depends(get_resolver),
    reconciler: SnapshotReconciler = Depends(get_reconciler),
    shared: RequestCoalescer = Depends(get_coalescer),
):
    """Ensure today's snapshot row exists for the resolved account."""
    body = body or SnapshotRequest()
    creds = await resolve_credentials(
        resolver,
        user_id,
        request.cookies,
        requested_id=body.ig_account_id,
        cron_secret=request.headers.get("x-cron-secret"),
    )
    try:
        result = await reconciler.ensure_day(creds.account, creds.token, source=SnapshotSource.GRAPH_SEED)
    except GraphAPIError as e:
        raise graph_error_to_app_error(e)
    if result.reason == "upsert_failed":
        raise AppError("upsert_failed", 500, day=result.chosen_day)
    if result.wrote:
        _invalidate_trend(shared, creds.account.account_id)
    return {"ok": True, "credential_source": creds.source.value, **result.model_dump()}


@router.post("/daily-snapshot/backfill")
async def backfill_daily_snapshot(
    request: Request,
    body: BackfillRequest | None = None,
    user_id: Optional[str] = Depends(get_user_id),
    resolver: AccountResolver = Depends(get_resolver),
    planner: BackfillPlanner = Depends(get_backfill),
    shared: RequestCoalescer = Depends(get_coalescer),
):
    """Fill missing or incomplete past days of the lookback window from Graph."""
    body = body or BackfillRequest()
    days = body.days if body.days is not None else settings.backfill_default_days
    days = max(1, min(settings.backfill_max_days, days))
    try:
        creds = await resolve_credentials(
            resolver,
            user_id,
            request.cookies,
            requested_id=body.ig_account_id,
            cron_secret=request.headers.get("x-cron-secret"),
        )
    except AppError as e:
        if e.code == "missing_token":
            raise AppError("missing_cookie:ig_access_token", 401) from None
        raise
    try:
        result = await planner.run(creds.account, creds.token, days)
    except GraphAPIError as e:
        raise graph_error_to_app_error(e)
    if result.inserted:
        _invalidate_trend(shared, creds.account.account_id)
    logger.info(
        f"Backfill days={days} inserted={result.inserted} skipped={result.skipped} "
        f"no_data={len(result.skipped_no_data)}",
        extra={"account_id": creds.account.account_id},
    )
    return {
        "ok": True,
        "days": days,
        "inserted": result.inserted,
        "skipped": result.skipped,
        "missing": result.missing,
        "chunks": result.chunks,
    }
