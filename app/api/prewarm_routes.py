"""Reachline — Prewarm Routes (session and cron)."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.api.deps import get_base_url, get_prewarm, get_reconciler, get_resolver, get_user_id
from app.config import settings
from app.core.errors import AppError
from app.core.logging import get_logger
from app.services.accounts import AccountResolver, cookie_account_hint, cron_secret_valid, to_ref
from app.services.prewarm import (
    PrewarmOrchestrator,
    cron_prewarm_account,
    is_throttled,
    now_ms,
    parse_mode,
    parse_reason,
    resolve_cron_account,
    throttle_cookie,
    throttle_seconds,
)
from app.services.reconciler import SnapshotReconciler

logger = get_logger("api.prewarm")

router = APIRouter(prefix="/api", tags=["Prewarm"])


class PrewarmRequest(BaseModel):
    """Body for POST /api/prewarm."""

    mode: Optional[str] = None
    """One of: "full" (default), "thumbs", "snapshots"."""
    reason: Optional[str] = None
    """One of: "login", "account_switch", "new_posts", "manual" (default)."""
    ig_account_id: Optional[str] = None
    debug: bool = False


class CronPrewarmRequest(BaseModel):
    ig_account_id: Optional[str] = None
    debug: bool = False


@router.post("/prewarm")
async def prewarm(
    request: Request,
    body: PrewarmRequest | None = None,
    user_id: Optional[str] = Depends(get_user_id),
    resolver: AccountResolver = Depends(get_resolver),
    orchestrator: PrewarmOrchestrator = Depends(get_prewarm),
    base_url: str = Depends(get_base_url),
):
    """Best-effort session prewarm. Throttled and account-less calls still answer 200."""
    body = body or PrewarmRequest()
    mode = parse_mode(body.mode)
    reason = parse_reason(body.reason)

    if is_throttled(request.cookies, mode):
        return {"ok": True, "skipped": "throttled", "mode": mode.value, "took_ms": 0}
    if not user_id:
        raise AppError("not_logged_in", 401)

    account = await resolver.resolve_for_user(
        user_id, body.ig_account_id, cookie_account_hint(request.cookies)
    )
    token = None
    if account is not None:
        token = await resolver.latest_token(user_id, account.ig_user_id)

    payload = await orchestrator.run(
        user_id,
        to_ref(account) if account is not None else None,
        token,
        mode,
        reason,
        base_url,
        debug=body.debug,
    )
    response = JSONResponse(payload)
    if "did" in payload:
        response.set_cookie(
            throttle_cookie(mode),
            str(now_ms()),
            max_age=throttle_seconds(mode),
            httponly=True,
            samesite="lax",
            path="/",
        )
    return response


@router.post("/cron/prewarm")
async def cron_prewarm(
    request: Request,
    body: CronPrewarmRequest | None = None,
    resolver: AccountResolver = Depends(get_resolver),
    reconciler: SnapshotReconciler = Depends(get_reconciler),
):
    """Ensure today's snapshot for one account on behalf of the scheduler."""
    if "x-vercel-cron" not in request.headers and not cron_secret_valid(
        request.headers.get("x-cron-secret")
    ):
        raise AppError("unauthorized", 401)

    body = body or CronPrewarmRequest()
    account, token = await resolve_cron_account(
        resolver, (body.ig_account_id or settings.cron_ig_account_id).strip()
    )
    logger.info("Cron prewarm running", extra={"account_id": account.account_id})
    return await cron_prewarm_account(reconciler, account, token, debug=body.debug)
