"""Reachline — Repair Actions.

Named, idempotent, per-user repairs a caller can trigger directly:

- unlock_thumbs   release thumbnail refresh locks stuck past the stale threshold
- snapshot_today  ensure today's snapshot row exists
- fix_owner_card  converge the user's cards to exactly one owner card

Each action runs at most once per cooldown window per user (dry runs are
exempt) and every run, dry or not, leaves an audit record whatever the outcome.
"""

import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.config import settings
from app.core.errors import AppError, GraphAPIError
from app.core.logging import get_logger
from app.core.redact import short_detail
from app.models.account_models import CreatorCard
from app.models.snapshot_models import AuditKind, SnapshotSource, utcnow
from app.services.accounts import Credentials
from app.services.audit import AuditLog
from app.services.prewarm import ensure_summary
from app.services.reconciler import SnapshotReconciler
from app.services.thumbnails import ThumbnailService

logger = get_logger("repair")


class RepairAction(str, Enum):
    UNLOCK_THUMBS = "unlock_thumbs"
    SNAPSHOT_TODAY = "snapshot_today"
    FIX_OWNER_CARD = "fix_owner_card"


VALID_ACTIONS = [a.value for a in RepairAction]


def parse_action(value: Any) -> RepairAction:
    try:
        return RepairAction(value)
    except ValueError:
        raise AppError("invalid_action", 400, valid=VALID_ACTIONS) from None


def _card_sort_key(card: CreatorCard) -> tuple:
    # Newest wins: updated_at, then created_at, ties broken by the larger id
    stamp: Optional[datetime] = card.updated_at or card.created_at
    return (stamp.replace(tzinfo=None) if stamp else datetime.min, card.id)


class RepairService:
    def __init__(
        self,
        sessions: async_sessionmaker,
        reconciler: SnapshotReconciler,
        thumbnails: ThumbnailService,
        audit: AuditLog,
    ):
        self._sessions = sessions
        self.reconciler = reconciler
        self.thumbnails = thumbnails
        self.audit = audit

    async def is_throttled(self, user_id: str, action: RepairAction) -> bool:
        since = utcnow() - timedelta(seconds=settings.repair_cooldown_s)
        return await self.audit.recent_exists(user_id, AuditKind.REPAIR, action.value, since)

    async def run(
        self,
        user_id: str,
        action: RepairAction,
        dry_run: bool = False,
        credentials: Optional[Credentials] = None,
        resolve: Optional[Callable[[], Awaitable[Credentials]]] = None,
    ) -> Dict[str, Any]:
        """Run one action and audit it. `resolve` is awaited inside the audited section."""
        started = time.monotonic()
        if not dry_run and await self.is_throttled(user_id, action):
            return {
                "ok": True,
                "skipped": "throttled",
                "action": action.value,
                "took_ms": int((time.monotonic() - started) * 1000),
            }

        try:
            if credentials is None and resolve is not None:
                credentials = await resolve()
            if action == RepairAction.UNLOCK_THUMBS:
                result = await self.thumbnails.unlock_stale(user_id, dry_run=dry_run)
                result["dry_run"] = dry_run
            elif action == RepairAction.SNAPSHOT_TODAY:
                result = await self.snapshot_today(credentials, dry_run=dry_run)
            else:
                result = await self.fix_owner_card(user_id, dry_run=dry_run)
        except Exception as e:
            reason = e.code if isinstance(e, AppError) else type(e).__name__
            await self.audit.record(
                AuditKind.REPAIR,
                user_id,
                action.value,
                ok=False,
                ig_account_id=credentials.account.account_id if credentials else None,
                reason=reason,
                details={"dry_run": dry_run, "error": short_detail(e)},
                took_ms=int((time.monotonic() - started) * 1000),
                dry_run=dry_run,
            )
            if not isinstance(e, AppError):
                logger.error(
                    f"Repair {action.value} failed: {short_detail(e)}",
                    extra={"action": action.value},
                )
            raise

        took_ms = int((time.monotonic() - started) * 1000)
        payload = {"ok": True, "action": action.value, **result, "took_ms": took_ms}
        await self.audit.record(
            AuditKind.REPAIR,
            user_id,
            action.value,
            ok=True,
            ig_account_id=credentials.account.account_id if credentials else None,
            skipped=result.get("skipped"),
            details={**result, "dry_run": dry_run},
            took_ms=took_ms,
            dry_run=dry_run,
        )
        logger.info(
            f"Repair {action.value} done dry_run={dry_run}",
            extra={"action": action.value, "duration_ms": took_ms},
        )
        return payload

    async def snapshot_today(self, credentials: Optional[Credentials], dry_run: bool = False) -> Dict[str, Any]:
        if credentials is None:
            raise AppError("no_ig_account", 404)
        account = credentials.account
        if dry_run:
            return {"dry_run": True, "ig_account_id": account.account_id}
        try:
            result = await self.reconciler.ensure_day(
                account, credentials.token, source=SnapshotSource.REPAIR
            )
        except GraphAPIError as e:
            logger.warning(
                f"snapshot_today Graph failure: {short_detail(e)}",
                extra={"account_id": account.account_id},
            )
            return {
                "ig_account_id": account.account_id,
                "did": False,
                "reason": f"graph_{e.status_code or e.error_code}",
            }
        return {"ig_account_id": account.account_id, **ensure_summary(result)}

    async def fix_owner_card(self, user_id: str, dry_run: bool = False) -> Dict[str, Any]:
        async with self._sessions() as session:
            result = await session.exec(select(CreatorCard).where(CreatorCard.user_id == user_id))
            cards = list(result.all())
            if not cards:
                return {"skipped": "no_cards", "owner_count_before": 0, "dry_run": dry_run}

            owner_count = sum(1 for c in cards if c.is_owner_card)
            if owner_count == 1:
                return {"skipped": "already_ok", "owner_count_before": 1, "dry_run": dry_run}

            chosen = max(cards, key=_card_sort_key)
            if dry_run:
                return {
                    "fixed": False,
                    "chosen_id": chosen.id,
                    "owner_count_before": owner_count,
                    "dry_run": True,
                }

            # Clear first, then set: a partial unique index on owner cards
            # would reject the reverse order.
            await session.execute(
                update(CreatorCard).where(CreatorCard.user_id == user_id).values(is_owner_card=False)
            )
            await session.execute(
                update(CreatorCard)
                .where(CreatorCard.user_id == user_id, CreatorCard.id == chosen.id)
                .values(is_owner_card=True)
            )
            await session.commit()

        logger.info(f"Owner card fixed: chose {chosen.id} out of {owner_count} owner(s)")
        return {
            "fixed": True,
            "chosen_id": chosen.id,
            "owner_count_before": owner_count,
            "dry_run": False,
        }
