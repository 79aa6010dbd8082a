"""Reachline — Account & Credential Resolution.

Which account a request acts on, and which token it uses, is decided once
at the top of each handler. The credential source is an explicit enum so no
downstream code re-derives it from headers or cookies.
"""

import hmac
from enum import Enum
from typing import List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from app.config import settings
from app.core.errors import AppError
from app.core.logging import get_logger
from app.models.account_models import IGAccount, IGAccountToken
from app.models.insight_models import AccountRef

logger = get_logger("accounts")

TOKEN_COOKIE = "ig_access_token"
ACCOUNT_HINT_COOKIES = ("ig_account_id", "ig_active_account_id")


class CredentialSource(str, Enum):
    CRON_ENV = "cron_env"
    COOKIE = "cookie"
    STORED = "stored"


class Credentials(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: CredentialSource
    account: AccountRef
    token: str


def to_ref(account: IGAccount) -> AccountRef:
    return AccountRef(
        account_id=account.id,
        owner_user_id=account.user_id,
        ig_user_id=account.ig_user_id,
        page_id=account.page_id or "",
    )


def cookie_account_hint(cookies: Mapping[str, str]) -> Optional[str]:
    for name in ACCOUNT_HINT_COOKIES:
        value = (cookies.get(name) or "").strip()
        if value:
            return value
    return None


def cron_secret_valid(provided: Optional[str]) -> bool:
    if not settings.cron_secret or not provided:
        return False
    return hmac.compare_digest(provided.strip(), settings.cron_secret)


class AccountResolver:
    """Reads the connected-account and token tables."""

    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def get_by_id(self, account_id: str) -> Optional[IGAccount]:
        async with self._sessions() as session:
            return await session.get(IGAccount, account_id)

    async def latest_for_user(self, user_id: str) -> Optional[IGAccount]:
        async with self._sessions() as session:
            result = await session.exec(
                select(IGAccount)
                .where(
                    IGAccount.user_id == user_id,
                    IGAccount.provider == "instagram",
                    col(IGAccount.revoked_at).is_(None),
                )
                .order_by(col(IGAccount.connected_at).desc())
                .limit(1)
            )
            return result.first()

    async def resolve_for_user(
        self,
        user_id: str,
        requested_id: Optional[str] = None,
        cookie_hint: Optional[str] = None,
    ) -> Optional[IGAccount]:
        """Explicit id, then cookie hint, then the latest connected account.

        An explicit id that is not the caller's raises `ig_account_not_found`;
        a stale cookie hint is ignored.
        """
        if requested_id:
            account = await self.get_by_id(requested_id)
            if account is None or account.user_id != user_id:
                raise AppError("ig_account_not_found", 404)
            return account
        if cookie_hint:
            account = await self.get_by_id(cookie_hint)
            if account is not None and account.user_id == user_id and account.revoked_at is None:
                return account
        return await self.latest_for_user(user_id)

    async def latest_token(self, user_id: str, ig_user_id: str) -> Optional[str]:
        async with self._sessions() as session:
            result = await session.exec(
                select(IGAccountToken)
                .where(
                    IGAccountToken.user_id == user_id,
                    IGAccountToken.provider == "instagram",
                    IGAccountToken.ig_user_id == ig_user_id,
                )
                .order_by(col(IGAccountToken.created_at).desc())
                .limit(1)
            )
            row = result.first()
        if row is None or not row.access_token.strip():
            return None
        return row.access_token.strip()

    async def connected_accounts(self) -> List[Tuple[AccountRef, str]]:
        """Every non-revoked account paired with its latest stored token."""
        async with self._sessions() as session:
            result = await session.exec(
                select(IGAccount).where(col(IGAccount.revoked_at).is_(None))
            )
            accounts = list(result.all())
        pairs: List[Tuple[AccountRef, str]] = []
        for account in accounts:
            token = await self.latest_token(account.user_id, account.ig_user_id)
            if token:
                pairs.append((to_ref(account), token))
        return pairs


async def resolve_credentials(
    resolver: AccountResolver,
    user_id: Optional[str],
    cookies: Mapping[str, str],
    requested_id: Optional[str] = None,
    cron_secret: Optional[str] = None,
) -> Credentials:
    """Pick the credential source and account for one request.

    Raises `AppError` for every fatal-for-request case.
    """
    if cron_secret_valid(cron_secret):
        account_id = requested_id or settings.cron_ig_account_id
        if not account_id:
            raise AppError("no_ig_account", 400, "cron_ig_account_id is not configured")
        account = await resolver.get_by_id(account_id)
        if account is None:
            raise AppError("ig_account_not_found", 404)
        token = (settings.ig_access_token or "").strip() or await resolver.latest_token(
            account.user_id, account.ig_user_id
        )
        if not token:
            raise AppError("missing_token", 401)
        return Credentials(source=CredentialSource.CRON_ENV, account=to_ref(account), token=token)

    if not user_id:
        raise AppError("not_logged_in", 401)

    account = await resolver.resolve_for_user(user_id, requested_id, cookie_account_hint(cookies))
    if account is None:
        raise AppError("no_ig_account", 404)
    ref = to_ref(account)

    cookie_token = (cookies.get(TOKEN_COOKIE) or "").strip()
    if cookie_token:
        return Credentials(source=CredentialSource.COOKIE, account=ref, token=cookie_token)

    stored = await resolver.latest_token(user_id, account.ig_user_id)
    if not stored:
        raise AppError("missing_token", 401)
    return Credentials(source=CredentialSource.STORED, account=ref, token=stored)
