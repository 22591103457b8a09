"""
Performance sampler for the API service.

Tracks API response times per route, database query timings, and process
memory/CPU samples, and publishes them together with the response cache
statistics through a single report.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TYPE_CHECKING

import psutil
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..caching.cache_manager import CacheManager


BYTES_PER_MB = 1024 * 1024
MAX_QUERY_LENGTH = 100


@dataclass
class PerformanceConfig:
    """Sampler tuning."""
    sample_interval_seconds: float = 60
    keep_memory_samples: int = 60
    keep_slow_queries: int = 20
    slow_query_threshold_ms: float = 200
    slow_request_threshold_ms: float = 1000
    memory_warning_threshold_mb: float = 512
    verbose_logging: bool = False


@dataclass
class TimingStats:
    """Running count/avg/max/min/errors for a stream of timings."""
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    min_ms: Optional[float] = None
    errors: int = 0

    def record(self, elapsed_ms: float, is_error: bool) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        self.max_ms = max(self.max_ms, elapsed_ms)
        self.min_ms = elapsed_ms if self.min_ms is None else min(self.min_ms, elapsed_ms)
        if is_error:
            self.errors += 1

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.count * 100 if self.count else 0.0


@dataclass
class MemorySample:
    """One process resource sample, sizes in MB."""
    rss_mb: float
    vms_mb: float
    cpu_percent: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rss_mb": self.rss_mb,
            "vms_mb": self.vms_mb,
            "cpu_percent": self.cpu_percent,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class SlowQuery:
    query: str
    time_ms: float
    timestamp: float
    is_error: bool


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def format_uptime(seconds: int) -> str:
    """Render seconds as ``1d 2h 3m 4s``, omitting leading zero units."""
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours or days:
        parts.append(f"{hours}h")
    if minutes or hours or days:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


class PerformanceMonitor:
    """Collects request, query and resource timings for the admin report."""

    def __init__(
        self,
        cache_manager: Optional["CacheManager"] = None,
        config: Optional[PerformanceConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        process: Optional[psutil.Process] = None,
    ):
        self.cache_manager = cache_manager
        self.config = config or PerformanceConfig()
        self.logger = get_logger("api.performance_monitor")
        self._clock = clock
        self._process = process or psutil.Process()

        self.boot_time = clock()
        self.bootstrap_ms: Optional[float] = None
        self.full_load_ms: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._reset_state()

    def _reset_state(self) -> None:
        self.api = TimingStats()
        self.routes: Dict[str, TimingStats] = {}
        self.db = TimingStats()
        self.slow_queries: Deque[SlowQuery] = deque(maxlen=self.config.keep_slow_queries)
        self.memory_samples: Deque[MemorySample] = deque(maxlen=self.config.keep_memory_samples)
        self.peak_rss_mb = 0.0
        self.peak_vms_mb = 0.0
        self.last_reset = self._clock()

    async def start(self) -> None:
        """Take an initial sample and start periodic sampling."""
        self.sample_memory_usage()
        if self._task is None and self.config.sample_interval_seconds > 0:
            self._task = asyncio.create_task(self._sample_loop())
        self.logger.info(
            "Performance monitoring started",
            sample_interval_seconds=self.config.sample_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Performance monitoring stopped")

    async def _sample_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sample_interval_seconds)
            self.sample_memory_usage()

    def record_bootstrap_complete(self) -> None:
        self.bootstrap_ms = (self._clock() - self.boot_time) * 1000
        self.logger.info("Application bootstrap completed", bootstrap_ms=round(self.bootstrap_ms, 2))

    def record_fully_loaded(self) -> None:
        self.full_load_ms = (self._clock() - self.boot_time) * 1000

    def sample_memory_usage(self) -> Optional[MemorySample]:
        """Record one resource sample; failures are logged and skipped."""
        try:
            memory = self._process.memory_info()
            sample = MemorySample(
                rss_mb=round(memory.rss / BYTES_PER_MB, 2),
                vms_mb=round(memory.vms / BYTES_PER_MB, 2),
                cpu_percent=self._process.cpu_percent(interval=None),
                timestamp=self._clock(),
            )
        except (psutil.Error, OSError) as exc:
            self.logger.error("Error sampling memory usage", error=str(exc))
            return None

        self.memory_samples.append(sample)
        self.peak_rss_mb = max(self.peak_rss_mb, sample.rss_mb)
        self.peak_vms_mb = max(self.peak_vms_mb, sample.vms_mb)

        if sample.rss_mb > self.config.memory_warning_threshold_mb:
            self.logger.warning(
                "Memory usage above warning threshold",
                rss_mb=sample.rss_mb,
                threshold_mb=self.config.memory_warning_threshold_mb,
            )
        return sample

    def record_api_performance(self, route: str, response_time_ms: float, is_error: bool = False) -> None:
        self.api.record(response_time_ms, is_error)
        self.routes.setdefault(route, TimingStats()).record(response_time_ms, is_error)

        if response_time_ms > self.config.slow_request_threshold_ms:
            self.logger.warning("Slow API request", route=route, response_time_ms=round(response_time_ms, 2))

    def record_db_performance(self, query: str, query_time_ms: float, is_error: bool = False) -> None:
        self.db.record(query_time_ms, is_error)
        if query_time_ms <= self.config.slow_query_threshold_ms:
            return

        truncated = query if len(query) <= MAX_QUERY_LENGTH else query[:MAX_QUERY_LENGTH] + "..."
        self.slow_queries.append(SlowQuery(truncated, query_time_ms, self._clock(), is_error))
        self.logger.warning("Slow DB query", query=truncated, query_time_ms=round(query_time_ms, 2))

    async def track_db_query(self, query_fn: Callable[[], Awaitable[Any]], description: str) -> Any:
        """Await ``query_fn`` and record its duration, whether it succeeds or raises."""
        start = time.perf_counter()
        is_error = False
        try:
            return await query_fn()
        except Exception:
            is_error = True
            raise
        finally:
            self.record_db_performance(description, (time.perf_counter() - start) * 1000, is_error)

    def top_routes(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.routes.items(), key=lambda item: item[1].count, reverse=True)
        return [
            {
                "route": route,
                "requests": stats.count,
                "avg_ms": round(stats.average_ms, 2),
                "errors": stats.errors,
            }
            for route, stats in ranked[:limit]
        ]

    def memory_trend(self, points: int = 10) -> List[Dict[str, Any]]:
        """Decimate the sample window to roughly ``points`` entries, keeping the latest."""
        samples = list(self.memory_samples)
        if not samples:
            return []
        step = max(1, len(samples) // points)
        trend = samples[::step]
        if trend[-1] is not samples[-1]:
            trend.append(samples[-1])
        return [{"timestamp": _iso(sample.timestamp), "rss_mb": sample.rss_mb} for sample in trend]

    def uptime_seconds(self) -> int:
        return int(self._clock() - self.boot_time)

    def get_report(self) -> Dict[str, Any]:
        current = self.memory_samples[-1] if self.memory_samples else None
        report: Dict[str, Any] = {
            "api": {
                "requests": self.api.count,
                "average_response_ms": round(self.api.average_ms, 2),
                "max_response_ms": round(self.api.max_ms, 2),
                "error_rate": round(self.api.error_rate, 2),
                "top_endpoints": self.top_routes(),
            },
            "database": {
                "queries": self.db.count,
                "average_query_ms": round(self.db.average_ms, 2),
                "max_query_ms": round(self.db.max_ms, 2),
                "error_rate": round(self.db.error_rate, 2),
                "slow_queries": [
                    {
                        "query": slow.query,
                        "time_ms": round(slow.time_ms, 2),
                        "timestamp": _iso(slow.timestamp),
                        "is_error": slow.is_error,
                    }
                    for slow in list(self.slow_queries)[-5:]
                ],
            },
            "memory": {
                "current": current.to_dict() if current else None,
                "peak": {"rss_mb": self.peak_rss_mb, "vms_mb": self.peak_vms_mb},
                "trend": self.memory_trend(),
            },
            "system": {
                "uptime": format_uptime(self.uptime_seconds()),
                "bootstrap_ms": self.bootstrap_ms,
                "full_load_ms": self.full_load_ms,
                "last_reset": _iso(self.last_reset),
            },
        }
        if self.cache_manager is not None:
            report["cache"] = self.cache_manager.get_stats()
        return report

    def reset(self) -> None:
        """Start fresh measurements; boot and load timings are kept."""
        self._reset_state()
        self.sample_memory_usage()
        self.logger.info("Performance metrics have been reset")

    def health(self) -> Dict[str, Any]:
        try:
            memory_mb = round(self._process.memory_info().rss / BYTES_PER_MB, 2)
        except (psutil.Error, OSError):
            memory_mb = None
        return {
            "status": "ok",
            "uptime_seconds": self.uptime_seconds(),
            "memory_mb": memory_mb,
        }


class PerformanceMonitorMiddleware(BaseHTTPMiddleware):
    """Times ``/api`` requests and feeds them to the monitor."""

    def __init__(self, app, monitor: PerformanceMonitor, path_prefix: str = "/api"):
        super().__init__(app)
        self.monitor = monitor
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not path.startswith(self.path_prefix) or "." in path:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000

        route = f"{request.method} {path}"
        is_error = response.status_code >= 400
        self.monitor.record_api_performance(route, elapsed_ms, is_error)

        if is_error and self.monitor.config.verbose_logging:
            self.monitor.logger.warning(
                "Error response",
                route=route,
                status_code=response.status_code,
                response_time_ms=round(elapsed_ms, 2),
            )
        return response
