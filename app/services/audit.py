"""Reachline — Best-effort Audit Log for repair and prewarm runs."""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.core.logging import get_logger
from app.core.redact import redact_payload
from app.models.snapshot_models import AuditEvent, AuditKind

logger = get_logger("audit")


class AuditLog:
    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def record(
        self,
        kind: AuditKind,
        user_id: str,
        action: str,
        ok: bool,
        ig_account_id: Optional[str] = None,
        reason: Optional[str] = None,
        skipped: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        took_ms: Optional[int] = None,
        dry_run: bool = False,
    ) -> bool:
        """Insert one event. Never raises; returns False when the insert failed."""
        event = AuditEvent(
            kind=kind.value,
            user_id=user_id,
            ig_account_id=ig_account_id,
            action=action,
            reason=reason,
            ok=ok,
            skipped=skipped,
            details_json=json.dumps(redact_payload(details or {}), default=str),
            took_ms=took_ms,
            dry_run=dry_run,
        )
        try:
            async with self._sessions() as session:
                session.add(event)
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Audit insert failed: {e}", extra={"action": action})
            return False

    async def recent_exists(
        self, user_id: str, kind: AuditKind, action: str, since: datetime
    ) -> bool:
        """Whether a real (non dry-run) event exists since `since`."""
        async with self._sessions() as session:
            result = await session.exec(
                select(AuditEvent.id)
                .where(
                    AuditEvent.user_id == user_id,
                    AuditEvent.kind == kind.value,
                    AuditEvent.action == action,
                    AuditEvent.created_at >= since,
                    AuditEvent.dry_run == False,  # noqa: E712
                )
                .limit(1)
            )
            return result.first() is not None
