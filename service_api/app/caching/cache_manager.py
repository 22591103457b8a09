"""
Namespaced response cache manager.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING, Union

from shared.logging import get_logger
from .namespaces import CacheNamespace, DEFAULT_NAMESPACE_CONFIGS, NamespaceConfig
from .ttl_store import NamespaceStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


NamespaceName = Union[str, CacheNamespace]

_MISSING = object()


class CacheManager:
    """Process-wide key/value cache partitioned into namespaces.

    Every namespace owns an independent ``NamespaceStore`` with its own
    default TTL and sweep period. Operation counters (hits, misses, sets,
    dels) are shared across namespaces and only change through cache
    operations or an explicit ``reset_stats``.

    Cache faults never reach the caller: ``get`` degrades to a miss,
    ``set``/``delete``/``flush`` return ``False``.
    """

    def __init__(
        self,
        namespaces: Optional[Dict[str, NamespaceConfig]] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.monotonic,
        stats_report_interval: float = 3600,
        reset_stats_after_report: bool = False,
    ):
        self.logger = get_logger("api.cache_manager")
        self.metrics = metrics
        self.stats_report_interval = stats_report_interval
        self.reset_stats_after_report = reset_stats_after_report

        configs = dict(DEFAULT_NAMESPACE_CONFIGS)
        configs.update(namespaces or {})
        self._configs: Dict[CacheNamespace, NamespaceConfig] = {}
        self._stores: Dict[CacheNamespace, NamespaceStore] = {}
        for namespace in CacheNamespace:
            self._configs[namespace] = configs[namespace.value]
            self._stores[namespace] = NamespaceStore(namespace.value, clock=clock)

        self._operations: Dict[str, int] = {"hits": 0, "misses": 0, "sets": 0, "dels": 0}
        self._tasks: List[asyncio.Task] = []

        self.logger.info("Cache manager initialized", namespaces=[ns.value for ns in self._stores])

    @property
    def running(self) -> bool:
        """Whether any sweeper or reporter task is alive."""
        return any(not task.done() for task in self._tasks)

    def resolve_namespace(self, name: NamespaceName) -> CacheNamespace:
        """Map a namespace name onto a known namespace, falling back to ``default``."""
        if isinstance(name, CacheNamespace):
            return name
        try:
            return CacheNamespace(name)
        except ValueError:
            self.logger.debug("Unknown cache namespace, using default", namespace=name)
            return CacheNamespace.DEFAULT

    def _record(self, namespace: CacheNamespace, operation: str, count: int = 1) -> None:
        self._operations[operation] += count
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter(
                "cache_operations_total",
                count,
                namespace=namespace.value,
                operation=operation,
            )
        except Exception as exc:  # pragma: no cover - metrics failures must not affect caching
            self.logger.debug("Failed to record cache metric", error=str(exc))

    def get(self, namespace: NamespaceName, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on a miss."""
        ns = self.resolve_namespace(namespace)
        try:
            value = self._stores[ns].get(key)
        except KeyError:
            self._record(ns, "misses")
            return default
        except Exception as exc:
            self.logger.error("Cache get error", namespace=ns.value, key=key, error=str(exc))
            self._record(ns, "misses")
            return default

        self._record(ns, "hits")
        return value

    def set(self, namespace: NamespaceName, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` under ``key``; ``ttl`` defaults to the namespace TTL."""
        ns = self.resolve_namespace(namespace)
        cache_ttl = self._configs[ns].default_ttl if ttl is None else ttl
        try:
            stored = self._stores[ns].set(key, value, cache_ttl)
        except Exception as exc:
            self.logger.error("Cache set error", namespace=ns.value, key=key, error=str(exc))
            return False

        if stored:
            self._record(ns, "sets")
            self.logger.debug("Cached value", namespace=ns.value, key=key, ttl=cache_ttl)
        return stored

    def delete(self, namespace: NamespaceName, key: str) -> bool:
        """Remove ``key``; returns whether an entry was deleted."""
        ns = self.resolve_namespace(namespace)
        try:
            deleted = self._stores[ns].delete(key)
        except Exception as exc:
            self.logger.error("Cache delete error", namespace=ns.value, key=key, error=str(exc))
            return False

        if deleted:
            self._record(ns, "dels")
        return deleted

    def clear_namespace(self, namespace: NamespaceName) -> int:
        """Remove every entry in a namespace and count them as deletions."""
        ns = self.resolve_namespace(namespace)
        try:
            count = self._stores[ns].clear()
        except Exception as exc:
            self.logger.error("Cache clear error", namespace=ns.value, error=str(exc))
            return 0

        if count:
            self._record(ns, "dels", count)
        self.logger.info("Cleared cache namespace", namespace=ns.value, keys_count=count)
        return count

    def flush(self, namespace: Optional[NamespaceName] = None) -> bool:
        """Clear one namespace, or all of them when ``namespace`` is omitted."""
        targets = list(self._stores) if namespace is None else [self.resolve_namespace(namespace)]
        try:
            for ns in targets:
                self._stores[ns].clear()
        except Exception as exc:
            self.logger.error("Cache flush error", namespaces=[ns.value for ns in targets], error=str(exc))
            return False

        if namespace is None:
            self.logger.info("Cache flushed completely")
        else:
            self.logger.info("Cache namespace flushed", namespace=targets[0].value)
        return True

    async def cached(
        self,
        namespace: NamespaceName,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it."""
        cached_value = self.get(namespace, key, _MISSING)
        if cached_value is not _MISSING:
            return cached_value

        try:
            result = await fn()
        except Exception as exc:
            self.logger.error(
                "Cached computation failed",
                namespace=self.resolve_namespace(namespace).value,
                key=key,
                error=str(exc),
            )
            raise

        self.set(namespace, key, result, ttl)
        return result

    def sweep(self, namespace: Optional[NamespaceName] = None) -> int:
        """Run an expiration sweep now and return the number of entries removed."""
        targets = list(self._stores) if namespace is None else [self.resolve_namespace(namespace)]
        removed = 0
        for ns in targets:
            try:
                removed += self._stores[ns].sweep()
            except Exception as exc:
                self.logger.error("Cache sweep error", namespace=ns.value, error=str(exc))
        return removed

    def hit_rate(self) -> float:
        lookups = self._operations["hits"] + self._operations["misses"]
        if lookups == 0:
            return 0.0
        return self._operations["hits"] / lookups

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of operation counters and per-namespace store statistics."""
        namespaces: Dict[str, Any] = {}
        for ns, store in self._stores.items():
            store_stats = store.stats()
            namespaces[ns.value] = {
                "keys": store_stats["keys"],
                "default_ttl": self._configs[ns].default_ttl,
                "stats": store_stats,
            }

        return {
            "operations": dict(self._operations),
            "hit_rate": self.hit_rate(),
            "namespaces": namespaces,
        }

    def report_stats(self) -> Dict[str, Any]:
        """Log a hit-rate summary for the current period and return the snapshot."""
        stats = self.get_stats()
        operations = stats["operations"]
        self.logger.info(
            "Cache statistics",
            hits=operations["hits"],
            misses=operations["misses"],
            sets=operations["sets"],
            dels=operations["dels"],
            hit_rate=round(stats["hit_rate"] * 100, 2),
        )

        if self.metrics:
            try:
                self.metrics.set_gauge("cache_hit_ratio", stats["hit_rate"])
                for name, info in stats["namespaces"].items():
                    self.metrics.set_gauge("cache_entries", info["keys"], namespace=name)
            except Exception as exc:  # pragma: no cover - metrics failures must not affect caching
                self.logger.debug("Failed to export cache gauges", error=str(exc))
        return stats

    def reset_stats(self) -> None:
        """Zero the operation counters."""
        for operation in self._operations:
            self._operations[operation] = 0
        self.logger.info("Cache statistics reset")

    async def start(self) -> None:
        """Start background sweepers and the periodic statistics reporter."""
        if self._tasks:
            return
        for ns, config in self._configs.items():
            if config.check_period > 0:
                self._tasks.append(asyncio.create_task(self._sweep_loop(ns, config.check_period)))
        if self.stats_report_interval > 0:
            self._tasks.append(asyncio.create_task(self._report_loop()))
        self.logger.info("Cache background tasks started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """Cancel background tasks."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            self.logger.info("Cache background tasks stopped")

    async def shutdown(self) -> None:
        """Stop background work and drop every cached entry."""
        await self.stop()
        self.flush()

    async def _sweep_loop(self, namespace: CacheNamespace, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            removed = self.sweep(namespace)
            if removed:
                self.logger.debug("Expired cache entries swept", namespace=namespace.value, removed=removed)

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_report_interval)
            self.report_stats()
            if self.reset_stats_after_report:
                self.reset_stats()
