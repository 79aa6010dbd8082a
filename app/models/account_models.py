"""Reachline — Account, Token, Card & Thumbnail Cache Models.

These tables belong to the surrounding creator platform. Only the columns
the snapshot, prewarm and repair flows read or write are modelled here.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.models.snapshot_models import utcnow


def _uuid() -> str:
    return str(uuid4())


class IGAccount(SQLModel, table=True):
    """An Instagram business account connected by a user."""

    __tablename__ = "ig_accounts"

    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(index=True)
    provider: str = Field(default="instagram")
    ig_user_id: str = Field(index=True)
    page_id: str = Field(default="")
    connected_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    revoked_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class IGAccountToken(SQLModel, table=True):
    """User-level Graph token for one (user, ig_user_id) pair."""

    __tablename__ = "ig_account_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: str = Field(default="instagram")
    ig_user_id: str = Field(index=True)
    access_token: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class CreatorCard(SQLModel, table=True):
    """A public creator profile card. One per user should be the owner card."""

    __tablename__ = "creator_cards"

    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(index=True)
    is_owner_card: bool = Field(default=False)
    posts_json: str = Field(default="[]", description="Featured IG posts as JSON")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class ThumbnailCacheEntry(SQLModel, table=True):
    """Proxied thumbnail cache row; `refreshing` is the refresh lock."""

    __tablename__ = "ig_thumbnail_cache"

    url_hash: str = Field(primary_key=True)
    refreshing: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    hard_expires_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
