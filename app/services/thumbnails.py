"""Reachline — Thumbnail Helpers.

Shared by the prewarm thumbnail warmer and the `unlock_thumbs` repair:
extracting thumbnail URLs from the owner card's featured posts, hashing them
into `ig_thumbnail_cache` keys, and warming the thumbnail proxy.
"""

import asyncio
import hashlib
import json
import re
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence
from urllib.parse import quote

import httpx
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from app.config import settings
from app.core.logging import get_logger
from app.models.account_models import CreatorCard, ThumbnailCacheEntry
from app.models.snapshot_models import utcnow
from app.services.background import spawn_detached

logger = get_logger("thumbnails")

URL_KEYS = ("thumbnail_url", "thumbnailUrl", "media_url", "mediaUrl", "image_url", "imageUrl")
_VIDEO_RE = re.compile(r"\.mp4(\?|$)", re.IGNORECASE)


def url_hash(url: str) -> str:
    return hashlib.sha256(url.encode()).hexdigest()


def extract_thumb_urls(posts: Sequence[Any], limit: int, scan: int | None = None) -> List[str]:
    """First usable image URL per post; video files are never proxied."""
    urls: List[str] = []
    for post in list(posts)[: scan or len(posts)]:
        if not isinstance(post, dict):
            continue
        for key in URL_KEYS:
            candidate = post.get(key)
            if isinstance(candidate, str) and candidate.strip() and not _VIDEO_RE.search(candidate):
                urls.append(candidate.strip())
                break
        if len(urls) >= limit:
            break
    return urls


class ThumbnailService:
    def __init__(self, sessions: async_sessionmaker, transport: httpx.AsyncBaseTransport | None = None):
        self._sessions = sessions
        self._transport = transport

    async def owner_card_posts(self, user_id: str) -> List[Any]:
        async with self._sessions() as session:
            result = await session.exec(
                select(CreatorCard)
                .where(CreatorCard.user_id == user_id)
                .order_by(col(CreatorCard.is_owner_card).desc())
                .limit(1)
            )
            card = result.first()
        if card is None:
            return []
        try:
            posts = json.loads(card.posts_json or "[]")
        except ValueError:
            logger.warning(f"Card {card.id} has unparseable posts_json")
            return []
        return posts if isinstance(posts, list) else []

    async def cached_hashes(self, hashes: Sequence[str], now: Optional[datetime] = None) -> set[str]:
        if not hashes:
            return set()
        now = now or utcnow()
        async with self._sessions() as session:
            result = await session.exec(
                select(ThumbnailCacheEntry.url_hash).where(
                    col(ThumbnailCacheEntry.url_hash).in_(list(hashes)),
                    col(ThumbnailCacheEntry.hard_expires_at) > now,
                )
            )
            return set(result.all())

    async def warm(self, user_id: str, base_url: str) -> dict:
        """Queue proxy fetches for uncached thumbnails; does not wait for them."""
        posts = await self.owner_card_posts(user_id)
        if not posts:
            return {"did": False, "count": 0}
        urls = extract_thumb_urls(posts, settings.thumb_warm_limit, scan=24)
        if not urls:
            return {"did": False, "count": 0}

        cached = await self.cached_hashes([url_hash(u) for u in urls])
        to_fetch = [u for u in urls if url_hash(u) not in cached]
        if to_fetch:
            spawn_detached(self._fetch_all(base_url, to_fetch), name="thumb_warm")
        return {"did": True, "count": len(to_fetch)}

    async def _fetch_all(self, base_url: str, urls: List[str]) -> None:
        size = settings.thumb_warm_concurrency
        async with httpx.AsyncClient(
            timeout=settings.thumb_warm_timeout_s, transport=self._transport
        ) as client:
            for i in range(0, len(urls), size):
                batch = urls[i : i + size]
                results = await asyncio.gather(
                    *(client.get(f"{base_url}/api/ig/thumbnail?url={quote(u, safe='')}") for u in batch),
                    return_exceptions=True,
                )
                failed = sum(1 for r in results if isinstance(r, Exception))
                if failed:
                    logger.info(f"{failed}/{len(batch)} thumbnail warm request(s) failed")

    async def unlock_stale(self, user_id: str, dry_run: bool = False) -> dict:
        """Release refresh locks on this user's thumbnails held past the stale threshold."""
        posts = await self.owner_card_posts(user_id)
        if not posts:
            return {"candidates": 0, "unlocked": 0, "skipped_no_posts": True}
        urls = extract_thumb_urls(posts, limit=200, scan=200)
        if not urls:
            return {"candidates": 0, "unlocked": 0, "skipped_no_posts": False}

        hashes = [url_hash(u) for u in urls]
        stuck_before = utcnow() - timedelta(minutes=settings.thumb_lock_stale_minutes)
        conditions = (
            col(ThumbnailCacheEntry.url_hash).in_(hashes),
            col(ThumbnailCacheEntry.refreshing).is_(True),
            col(ThumbnailCacheEntry.updated_at) < stuck_before,
        )
        async with self._sessions() as session:
            result = await session.exec(
                select(func.count()).select_from(ThumbnailCacheEntry).where(*conditions)
            )
            candidates = int(result.one() or 0)
            if dry_run or candidates == 0:
                return {"candidates": candidates, "unlocked": 0, "skipped_no_posts": False}
            updated = await session.execute(
                update(ThumbnailCacheEntry).where(*conditions).values(refreshing=False)
            )
            await session.commit()
        return {
            "candidates": candidates,
            "unlocked": updated.rowcount if updated.rowcount is not None else candidates,
            "skipped_no_posts": False,
        }
