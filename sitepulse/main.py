"""SitePulse — FastAPI Application Entry Point.

Multi-platform cloud resource monitoring: VMware Cloud Director, CloudStack,
Proxmox VE and Veeam ONE behind one normalized model.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import select

from sitepulse.database import init_db, session_factory, test_connection
from sitepulse.config import settings
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.models.config_models import PlatformSite
from sitepulse.scheduler.jobs import SnapshotPoller
from sitepulse.storage.snapshot_store import SnapshotStore
from sitepulse.api.site_routes import router as site_router
from sitepulse.api.polling_routes import router as polling_router
from sitepulse.api.report_routes import router as report_router
from sitepulse.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


def _load_db_sites(registry: PlatformRegistry, factory=session_factory) -> None:
    """Register the sites stored in platform_sites. A bad row skips only itself."""
    try:
        with factory() as session:
            sites = session.exec(select(PlatformSite)).all()
    except Exception as e:
        logger.error(f"Could not load sites from database: {e}")
        return

    configs = []
    for site in sites:
        try:
            configs.append(site.to_site_config())
        except ValueError as e:
            logger.warning(
                f"Skipping stored site {site.platform_type}:{site.site_id}: {e}",
                extra={"site_id": site.site_id},
            )
    registry.initialize_from_configs(configs)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("SitePulse starting up...")
    logger.info(f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"Table creation failed: {e}")
    else:
        logger.error("Database NOT connected — snapshot endpoints will fail")

    registry = PlatformRegistry()
    registry.initialize_from_env()
    if db_ok:
        _load_db_sites(registry)
    logger.info(f"{len(registry)} platform sites registered")

    store = SnapshotStore(session_factory)
    poller = SnapshotPoller(registry, store)
    app.state.registry = registry
    app.state.store = store
    app.state.poller = poller

    if settings.polling_enabled and not IS_SERVERLESS:
        poller.start()
    else:
        logger.info("Snapshot polling disabled")
    yield
    poller.stop()
    await registry.close_all()
    logger.info("SitePulse shut down")


app = FastAPI(
    title="SitePulse",
    description="Resource allocation and usage across VCD, CloudStack, Proxmox and Veeam ONE sites, with monthly high-water-mark reporting.",
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

# Routers
app.include_router(site_router)
app.include_router(polling_router)
app.include_router(report_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "sitepulse",
        "version": "1.0.0",
    }
