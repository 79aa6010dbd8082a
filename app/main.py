"""Reachline — FastAPI Application Entry Point.

Instagram Insights snapshot, trend and prewarm service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.deps import close_graph_client
from app.api.instagram_routes import router as instagram_router
from app.api.prewarm_routes import router as prewarm_router
from app.api.repair_routes import router as repair_router
from app.core.errors import AppError
from app.core.logging import get_logger
from app.database import init_db, test_connection
from app.scheduler.jobs import start_scheduler, stop_scheduler
from app.services.background import drain

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 Reachline starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    # Test connection first
    db_ok = await test_connection()
    if db_ok:
        try:
            await init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    await drain()
    await close_graph_client()
    logger.info("Reachline shut down")


app = FastAPI(
    title="Reachline",
    description="Instagram Insights snapshots: daily metric store, padded trend reads, prewarm and repair.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {}
    if "retry_after" in exc.extra:
        headers["Retry-After"] = str(exc.extra["retry_after"])
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


# Routers
app.include_router(instagram_router)
app.include_router(prewarm_router)
app.include_router(repair_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "reachline",
        "version": "1.0.0",
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    from app.database import _mask_url, db_url

    error = None
    connected = False
    try:
        connected = await test_connection()
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }
