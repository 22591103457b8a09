"""
API service for the Life-Skills Access Layer.

Owns the process-wide response cache and performance monitor and exposes
the administrative performance/cache endpoints. Feature routers receive the
cache manager from ``ApiService.cache_manager`` and wrap their JSON routes
with the middleware in ``app.caching.middleware``.
"""

from typing import Optional

from shared.base_service import BaseService
from shared.config import ServiceConfig
from .caching.cache_manager import CacheManager
from .caching.namespaces import namespace_configs_from_settings
from .domain.auth import ApiKeyAuthenticator, ApiKeyAuthMiddleware
from .monitoring.performance_monitor import (
    PerformanceConfig,
    PerformanceMonitor,
    PerformanceMonitorMiddleware,
)
from .routes.performance import create_performance_router


class ApiService(BaseService):
    """API service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("api", 8000, config)

        self.cache_manager = CacheManager(
            namespace_configs_from_settings(self.config),
            metrics=self.metrics,
            stats_report_interval=self.config.cache_stats_report_interval,
            reset_stats_after_report=self.config.cache_reset_stats_after_report,
        )
        self.performance_monitor = PerformanceMonitor(
            self.cache_manager,
            PerformanceConfig(
                sample_interval_seconds=self.config.perf_sample_interval_seconds,
                slow_query_threshold_ms=self.config.perf_slow_query_threshold_ms,
                slow_request_threshold_ms=self.config.perf_slow_request_threshold_ms,
                memory_warning_threshold_mb=self.config.perf_memory_warning_threshold_mb,
                verbose_logging=self.config.perf_verbose_logging,
            ),
        )
        self.authenticator = ApiKeyAuthenticator(self.config.api_keys)

        @self.app.on_event("startup")
        async def _startup():
            self.performance_monitor.record_bootstrap_complete()
            await self.cache_manager.start()
            await self.performance_monitor.start()
            self.performance_monitor.record_fully_loaded()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.performance_monitor.stop()
            await self.cache_manager.shutdown()

        # Added last so authentication runs before timing
        self.app.add_middleware(PerformanceMonitorMiddleware, monitor=self.performance_monitor)
        self.app.add_middleware(ApiKeyAuthMiddleware, authenticator=self.authenticator)

        self.app.include_router(
            create_performance_router(self.cache_manager, self.performance_monitor),
            prefix=self.config.performance_prefix,
        )

        # Expose service instance via app state for introspection/testing
        self.app.state.api_service = self

    async def _check_dependencies(self):
        return {"cache": "ok" if self.cache_manager.running else "stopped"}


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = ApiService(config)
    return service.app


if __name__ == "__main__":
    service = ApiService()
    service.run()
