"""Reachline — Scheduler Jobs.

APScheduler daily job that runs the cron prewarm for every connected account
at the configured hour.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.api.deps import get_graph_client
from app.config import settings
from app.connectors.instagram.fetcher import InsightsFetcher
from app.core.logging import get_logger
from app.database import session_factory
from app.services.accounts import AccountResolver
from app.services.prewarm import cron_prewarm_account
from app.services.reconciler import SnapshotReconciler
from app.services.snapshot_store import SnapshotStore

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_prewarm_job(sessions=None, client=None) -> dict:
    """Ensure today's snapshot for all connected accounts, one after another."""
    sessions = sessions or session_factory
    client = client or get_graph_client()
    reconciler = SnapshotReconciler(SnapshotStore(sessions), InsightsFetcher(client))

    logger.info("Scheduled daily prewarm starting...")
    accounts = await AccountResolver(sessions).connected_accounts()
    summary = {"accounts": len(accounts), "wrote": 0, "failed": 0}
    for account, token in accounts:
        try:
            result = await cron_prewarm_account(reconciler, account, token)
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"Scheduled prewarm failed: {e}", extra={"account_id": account.account_id})
            continue
        if result.get("snapshot_error"):
            summary["failed"] += 1
        elif result["snapshot"].get("did"):
            summary["wrote"] += 1
    logger.info(
        f"Scheduled prewarm complete. {summary['wrote']}/{summary['accounts']} written, "
        f"{summary['failed']} failed"
    )
    return summary


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_prewarm_job,
        "cron",
        hour=settings.prewarm_hour,
        minute=0,
        id="daily_prewarm",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily prewarm at {settings.prewarm_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
