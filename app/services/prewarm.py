"""Reachline — Prewarm Orchestrator.

Session prewarm runs up to three sub-tasks concurrently, each bounded by its
own timeout:

  snapshot    ensure today's snapshot row (needs a token)
  cards       touch the user's cards (warms the DB connection)
  thumbnails  queue thumbnail proxy fetches for the owner card's posts

A slow sub-task reports `None` ("not known to be done") and keeps running in
the background; a failing one reports its error. Neither affects siblings.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from app.config import settings
from app.core.errors import AppError, GraphAPIError
from app.core.logging import get_logger
from app.core.redact import short_detail
from app.models.account_models import CreatorCard
from app.models.insight_models import AccountRef, EnsureResult
from app.models.snapshot_models import AuditKind, SnapshotSource
from app.services.accounts import AccountResolver, to_ref
from app.services.audit import AuditLog
from app.services.background import run_with_timeout, spawn_detached
from app.services.reconciler import SnapshotReconciler
from app.services.thumbnails import ThumbnailService

logger = get_logger("prewarm")


class PrewarmMode(str, Enum):
    FULL = "full"
    THUMBS = "thumbs"
    SNAPSHOTS = "snapshots"


class PrewarmReason(str, Enum):
    LOGIN = "login"
    ACCOUNT_SWITCH = "account_switch"
    NEW_POSTS = "new_posts"
    MANUAL = "manual"


def parse_mode(value: Any) -> PrewarmMode:
    try:
        return PrewarmMode(value)
    except ValueError:
        return PrewarmMode.FULL


def parse_reason(value: Any) -> PrewarmReason:
    try:
        return PrewarmReason(value)
    except ValueError:
        return PrewarmReason.MANUAL


# ── Cookie throttle ──

THROTTLE_COOKIE_FULL = "prewarm_at"
THROTTLE_COOKIE_THUMBS = "prewarm_thumbs_at"


def throttle_cookie(mode: PrewarmMode) -> str:
    return THROTTLE_COOKIE_THUMBS if mode == PrewarmMode.THUMBS else THROTTLE_COOKIE_FULL


def throttle_seconds(mode: PrewarmMode) -> int:
    if mode == PrewarmMode.THUMBS:
        return settings.prewarm_throttle_thumbs_s
    return settings.prewarm_throttle_full_s


def now_ms() -> int:
    return int(time.time() * 1000)


def is_throttled(cookies: Mapping[str, str], mode: PrewarmMode, now: Optional[int] = None) -> bool:
    """The cookie holds the epoch-ms of the last run for this mode."""
    try:
        last = int(cookies.get(throttle_cookie(mode)) or 0)
    except ValueError:
        return False
    now = now if now is not None else now_ms()
    return bool(last) and now - last < throttle_seconds(mode) * 1000


def ensure_summary(result: EnsureResult) -> Dict[str, Any]:
    return {"did": result.wrote, **result.model_dump(exclude={"wrote"}, exclude_none=True)}


class PrewarmOrchestrator:
    def __init__(
        self,
        sessions: async_sessionmaker,
        reconciler: SnapshotReconciler,
        thumbnails: ThumbnailService,
        audit: AuditLog,
        timeout_s: float | None = None,
    ):
        self._sessions = sessions
        self.reconciler = reconciler
        self.thumbnails = thumbnails
        self.audit = audit
        self.timeout_s = timeout_s if timeout_s is not None else settings.prewarm_task_timeout_ms / 1000

    async def run(
        self,
        user_id: str,
        account: Optional[AccountRef],
        token: Optional[str],
        mode: PrewarmMode,
        reason: PrewarmReason,
        base_url: str,
        debug: bool = False,
    ) -> Dict[str, Any]:
        started = time.monotonic()

        def took() -> int:
            return int((time.monotonic() - started) * 1000)

        if account is None:
            self._audit(user_id, None, mode, reason, skipped="no_ig_account", took_ms=took())
            return {"ok": True, "skipped": "no_ig_account", "mode": mode.value, "took_ms": took()}
        if mode == PrewarmMode.SNAPSHOTS and not token:
            self._audit(user_id, account.account_id, mode, reason, skipped="no_token", took_ms=took())
            return {"ok": True, "skipped": "no_token", "mode": mode.value, "took_ms": took()}

        snapshot_task: Awaitable[Any] = _done(None)
        if mode in (PrewarmMode.FULL, PrewarmMode.SNAPSHOTS):
            snapshot_task = (
                self._guarded("snapshot", self._snapshot(account, token))
                if token
                else _done({"did": False, "reason": "no_token"})
            )
        cards_task = self._guarded("cards", self._cards(user_id)) if mode == PrewarmMode.FULL else _done(None)
        thumbs_task = (
            self._guarded("thumbnails", self.thumbnails.warm(user_id, base_url))
            if mode in (PrewarmMode.FULL, PrewarmMode.THUMBS)
            else _done(None)
        )

        snapshot, cards, thumbnails = await asyncio.gather(snapshot_task, cards_task, thumbs_task)
        payload: Dict[str, Any] = {
            "ok": True,
            "mode": mode.value,
            "did": {"snapshot": snapshot, "cards": cards, "thumbnails": thumbnails},
            "took_ms": took(),
        }
        if debug:
            payload["debug"] = {
                "ig_account_id": account.account_id,
                "ig_user_id": account.ig_user_id,
                "page_id": account.page_id,
                "has_token": bool(token),
                "base_url": base_url,
            }
        self._audit(user_id, account.account_id, mode, reason, took_ms=payload["took_ms"], details=payload["did"])
        logger.info(
            f"Prewarm {mode.value} finished ({reason.value})",
            extra={"account_id": account.account_id, "mode": mode.value, "duration_ms": payload["took_ms"]},
        )
        return payload

    async def _snapshot(self, account: AccountRef, token: str) -> Dict[str, Any]:
        result = await self.reconciler.ensure_day(account, token, source=SnapshotSource.PREWARM)
        return ensure_summary(result)

    async def _cards(self, user_id: str) -> Dict[str, Any]:
        async with self._sessions() as session:
            result = await session.exec(
                select(CreatorCard.id)
                .where(CreatorCard.user_id == user_id)
                .order_by(col(CreatorCard.is_owner_card).desc(), col(CreatorCard.updated_at).desc())
                .limit(5)
            )
            result.all()
        return {"did": True}

    async def _guarded(self, name: str, coro: Awaitable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        try:
            return await run_with_timeout(coro, self.timeout_s, name=f"prewarm_{name}")
        except Exception as e:
            logger.warning(f"Prewarm {name} failed: {short_detail(e)}")
            return {"did": False, "error": short_detail(e)}

    def _audit(
        self,
        user_id: str,
        account_id: Optional[str],
        mode: PrewarmMode,
        reason: PrewarmReason,
        skipped: Optional[str] = None,
        took_ms: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        spawn_detached(
            self.audit.record(
                AuditKind.PREWARM,
                user_id,
                mode.value,
                ok=True,
                ig_account_id=account_id,
                reason=reason.value,
                skipped=skipped,
                details=details,
                took_ms=took_ms,
            ),
            name="prewarm_audit",
        )


async def _done(value: Any) -> Any:
    return value


# ── Cron prewarm ──


async def resolve_cron_account(resolver: AccountResolver, account_id: str) -> tuple[AccountRef, str]:
    """Account and token for a cron run. Env token first, then the stored one."""
    if not account_id:
        raise AppError("missing_body:ig_account_id", 400)
    account = await resolver.get_by_id(account_id)
    if account is None:
        raise AppError("ig_account_not_found", 404)
    token = (settings.ig_access_token or "").strip() or await resolver.latest_token(
        account.user_id, account.ig_user_id
    )
    if not token:
        raise AppError("missing_token", 401)
    return to_ref(account), token


async def cron_prewarm_account(
    reconciler: SnapshotReconciler,
    account: AccountRef,
    token: str,
    debug: bool = False,
) -> Dict[str, Any]:
    """Ensure today's snapshot, falling back to the latest day Graph has."""
    snapshot: Dict[str, Any] = {"did": False, "reason": "unknown"}
    snapshot_error: Optional[str] = None
    try:
        result = await reconciler.ensure_day(
            account, token, source=SnapshotSource.CRON_PREWARM, allow_latest_fallback=True
        )
        snapshot = ensure_summary(result)
    except GraphAPIError as e:
        snapshot_error = short_detail(e)
        logger.error(f"Cron prewarm snapshot failed: {snapshot_error}", extra={"account_id": account.account_id})

    payload: Dict[str, Any] = {"ok": True, "snapshot": snapshot}
    if snapshot_error:
        payload["snapshot_error"] = snapshot_error
    if debug:
        payload["debug"] = {
            "ig_account_id": account.account_id,
            "ig_user_id": account.ig_user_id,
            "page_id": account.page_id,
            "user_id": account.owner_user_id,
            "has_token": bool(token),
        }
    return payload
