"""FastAPI dependencies."""

from functools import lru_cache

from sku_studio.db.repository import OrderRepository
from sku_studio.db.session import AsyncSessionLocal
from sku_studio.ingest.proxy_manager import ProxyPool
from sku_studio.worker.job_runner import ScrapeJobRunner
from sku_studio.worker.order_service import OrderService


@lru_cache
def get_repository() -> OrderRepository:
    return OrderRepository(AsyncSessionLocal)


@lru_cache
def get_proxy_pool() -> ProxyPool:
    """Process-wide proxy pool; its cache and rotation indices are shared by all jobs."""
    return ProxyPool()


@lru_cache
def get_job_runner() -> ScrapeJobRunner:
    return ScrapeJobRunner(get_repository(), proxy_pool=get_proxy_pool())


def get_order_service() -> OrderService:
    """Dependency for the order service."""
    return OrderService(get_repository(), get_job_runner())
