"""Store catalog routes."""

from fastapi import APIRouter, Depends

from sku_studio.api.deps import get_proxy_pool
from sku_studio.ingest.proxy_manager import ProxyPool
from sku_studio.ingest.store_catalog import get_active_stores

router = APIRouter(prefix="/api/stores", tags=["stores"])


@router.get("")
async def list_stores():
    """List the retailers every identifier is searched on."""
    stores = get_active_stores()
    return {
        "stores": [
            {"name": s.name, "base_url": s.base_url, "notes": s.notes}
            for s in stores
        ]
    }


@router.get("/proxies")
async def proxy_stats(pool: ProxyPool = Depends(get_proxy_pool)):
    """Egress proxy pool size by country group."""
    return {"enabled": pool.enabled, **(await pool.get_stats())}
