"""Reachline — FastAPI Dependencies.

Routes never build services themselves; tests swap `get_sessions`,
`get_graph_client` and `get_coalescer` through `app.dependency_overrides`.
"""

from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.connectors.instagram.client import GraphClient
from app.connectors.instagram.fetcher import InsightsFetcher
from app.database import session_factory
from app.services.accounts import AccountResolver
from app.services.audit import AuditLog
from app.services.backfill import BackfillPlanner
from app.services.coalescer import RequestCoalescer, coalescer
from app.services.prewarm import PrewarmOrchestrator
from app.services.reconciler import SnapshotReconciler
from app.services.repair import RepairService
from app.services.snapshot_store import SnapshotStore
from app.services.thumbnails import ThumbnailService
from app.services.trend import TrendService

_graph_client: Optional[GraphClient] = None


def get_sessions() -> async_sessionmaker:
    return session_factory


def get_graph_client() -> GraphClient:
    global _graph_client
    if _graph_client is None:
        _graph_client = GraphClient()
    return _graph_client


async def close_graph_client() -> None:
    global _graph_client
    if _graph_client is not None:
        await _graph_client.close()
        _graph_client = None


def get_coalescer() -> RequestCoalescer:
    return coalescer


def get_store(sessions: async_sessionmaker = Depends(get_sessions)) -> SnapshotStore:
    return SnapshotStore(sessions)


def get_fetcher(client: GraphClient = Depends(get_graph_client)) -> InsightsFetcher:
    return InsightsFetcher(client)


def get_reconciler(
    store: SnapshotStore = Depends(get_store),
    fetcher: InsightsFetcher = Depends(get_fetcher),
) -> SnapshotReconciler:
    return SnapshotReconciler(store, fetcher)


def get_backfill(
    store: SnapshotStore = Depends(get_store),
    fetcher: InsightsFetcher = Depends(get_fetcher),
) -> BackfillPlanner:
    return BackfillPlanner(store, fetcher)


def get_trend(
    store: SnapshotStore = Depends(get_store),
    fetcher: InsightsFetcher = Depends(get_fetcher),
    shared: RequestCoalescer = Depends(get_coalescer),
) -> TrendService:
    return TrendService(store, fetcher, shared)


def get_resolver(sessions: async_sessionmaker = Depends(get_sessions)) -> AccountResolver:
    return AccountResolver(sessions)


def get_audit(sessions: async_sessionmaker = Depends(get_sessions)) -> AuditLog:
    return AuditLog(sessions)


def get_thumbnails(sessions: async_sessionmaker = Depends(get_sessions)) -> ThumbnailService:
    return ThumbnailService(sessions)


def get_prewarm(
    sessions: async_sessionmaker = Depends(get_sessions),
    reconciler: SnapshotReconciler = Depends(get_reconciler),
    thumbnails: ThumbnailService = Depends(get_thumbnails),
    audit: AuditLog = Depends(get_audit),
) -> PrewarmOrchestrator:
    return PrewarmOrchestrator(sessions, reconciler, thumbnails, audit)


def get_repair(
    sessions: async_sessionmaker = Depends(get_sessions),
    reconciler: SnapshotReconciler = Depends(get_reconciler),
    thumbnails: ThumbnailService = Depends(get_thumbnails),
    audit: AuditLog = Depends(get_audit),
) -> RepairService:
    return RepairService(sessions, reconciler, thumbnails, audit)


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity as set by the auth layer in front of this service."""
    value = (x_user_id or "").strip()
    return value or None


def get_base_url(request: Request) -> str:
    if settings.app_base_url:
        return settings.app_base_url.rstrip("/")
    host = request.headers.get("host", "localhost:8000")
    proto = request.headers.get("x-forwarded-proto", "https")
    return f"{proto}://{host}"
