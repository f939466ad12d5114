"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from sku_studio.api.deps import get_proxy_pool
from sku_studio.api.routes import orders, stores, users
from sku_studio.config import settings
from sku_studio.db.session import engine, init_db
from sku_studio.logging_config import setup_logging
from sku_studio.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting SKU Studio...")
    await init_db()

    proxy_pool = get_proxy_pool()
    if proxy_pool.enabled:
        proxies = await proxy_pool.refresh()
        logger.info(f"Loaded {len(proxies)} proxies")

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="SKU Studio",
    description="Studio-quality product images for SKU/UPC/EAN identifiers",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(orders.router)
app.include_router(users.router)
app.include_router(stores.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "sku_studio.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
