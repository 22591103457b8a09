"""
Administrative performance and cache endpoints.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from shared.logging import get_logger
from ..caching.cache_manager import CacheManager
from ..domain.auth import require_admin
from ..monitoring.performance_monitor import PerformanceMonitor


def create_performance_router(cache_manager: CacheManager, monitor: PerformanceMonitor) -> APIRouter:
    """Build the operator router; everything except ``/health`` needs an admin."""
    router = APIRouter(tags=["performance"])
    logger = get_logger("api.performance_routes")

    @router.get("/metrics")
    async def performance_metrics(user_info: Dict[str, Any] = Depends(require_admin)):
        """Current performance report, including cache statistics."""
        return monitor.get_report()

    @router.get("/cache")
    async def cache_stats(user_info: Dict[str, Any] = Depends(require_admin)):
        """Cache manager statistics snapshot."""
        return cache_manager.get_stats()

    @router.post("/reset")
    async def reset_metrics(user_info: Dict[str, Any] = Depends(require_admin)):
        """Reset performance counters."""
        monitor.reset()
        logger.info("Performance metrics reset by admin", user_id=user_info.get("user_id"))
        return {"success": True, "message": "Performance metrics reset"}

    @router.post("/cache/flush")
    async def flush_cache(user_info: Dict[str, Any] = Depends(require_admin)):
        """Flush every cache namespace."""
        flushed = cache_manager.flush()
        logger.info("Cache flushed by admin", user_id=user_info.get("user_id"), success=flushed)
        return {"success": flushed, "message": "Cache flushed" if flushed else "Cache flush failed"}

    @router.get("/health")
    async def health():
        """Unauthenticated liveness probe."""
        return monitor.health()

    return router
