"""Reachline — Repair Routes."""

from functools import partial
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.api.deps import get_repair, get_resolver, get_user_id
from app.core.errors import AppError
from app.core.logging import get_logger
from app.services.accounts import AccountResolver, resolve_credentials
from app.services.repair import RepairAction, RepairService, parse_action

logger = get_logger("api.repair")

router = APIRouter(prefix="/api", tags=["Repair"])


class RepairRequest(BaseModel):
    """Body for POST /api/repair."""

    action: Optional[Any] = None
    """One of: "unlock_thumbs", "snapshot_today", "fix_owner_card"."""
    dry_run: bool = False
    ig_account_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"action": "fix_owner_card", "dry_run": True},
                {"action": "snapshot_today"},
            ]
        }
    }


@router.post("/repair")
async def repair(
    request: Request,
    body: RepairRequest | None = None,
    user_id: Optional[str] = Depends(get_user_id),
    resolver: AccountResolver = Depends(get_resolver),
    service: RepairService = Depends(get_repair),
):
    """Run one named per-user repair action."""
    if not user_id:
        raise AppError("not_logged_in", 401)
    body = body or RepairRequest()
    action = parse_action(body.action)

    resolve = None
    if action == RepairAction.SNAPSHOT_TODAY:
        resolve = partial(
            resolve_credentials, resolver, user_id, request.cookies, requested_id=body.ig_account_id
        )
    return await service.run(user_id, action, dry_run=body.dry_run, resolve=resolve)
