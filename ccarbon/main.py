"""ccarbon FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ccarbon.routers.usage import monitor_router, sessions_router, usage_router

from ccarbon.db import connection, migrations
from ccarbon.monitor import UsageMonitor
from ccarbon.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ccarbon")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ccarbon backend starting up")
    initialize_observability()

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Wire the pipeline, then start watching
    monitor = UsageMonitor(db)
    monitor.wire()
    app.state.monitor = monitor
    await monitor.start()

    yield

    logger.info("ccarbon backend shutting down")
    await monitor.stop()
    shutdown_observability()
    await connection.close_connection()


app = FastAPI(
    title="ccarbon API",
    description="Token usage ingestion and rollups for Claude CLI sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(usage_router)
app.include_router(sessions_router)
app.include_router(monitor_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    monitor = getattr(app.state, "monitor", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if monitor is not None and monitor.is_running else "stopped",
    }
