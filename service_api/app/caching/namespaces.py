"""
Cache namespaces and their default policies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig


class CacheNamespace(str, Enum):
    """Logical partitions of the cache keyspace."""
    DEFAULT = "default"
    USER = "user"
    CONTENT = "content"
    API = "api"
    SYSTEM = "system"


@dataclass(frozen=True)
class NamespaceConfig:
    """Default TTL and expiration sweep period for a namespace, in seconds."""
    default_ttl: int
    check_period: int


DEFAULT_NAMESPACE_CONFIGS: Dict[str, NamespaceConfig] = {
    CacheNamespace.DEFAULT.value: NamespaceConfig(default_ttl=300, check_period=120),
    # Per-user data is volatile, sweep often
    CacheNamespace.USER.value: NamespaceConfig(default_ttl=60, check_period=30),
    CacheNamespace.CONTENT.value: NamespaceConfig(default_ttl=3600, check_period=600),
    CacheNamespace.API.value: NamespaceConfig(default_ttl=600, check_period=120),
    CacheNamespace.SYSTEM.value: NamespaceConfig(default_ttl=3600, check_period=600),
}


def namespace_configs_from_settings(config: "BaseConfig") -> Dict[str, NamespaceConfig]:
    """Build the namespace table from flat ``cache_<name>_ttl`` settings."""
    return {
        namespace.value: NamespaceConfig(
            default_ttl=getattr(config, f"cache_{namespace.value}_ttl"),
            check_period=getattr(config, f"cache_{namespace.value}_check_period"),
        )
        for namespace in CacheNamespace
    }
