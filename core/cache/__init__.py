"""
Tenant-scoped local cache.
"""

from .store import (
    ENTITY_LIST,
    HIDDEN_ENTITIES,
    SUMMARY,
    TENANT_METADATA,
    TERMINAL_RESULTS,
    CacheEntry,
    CacheNamespace,
    TenantCache,
    namespaces_from_config,
)

__all__ = [
    "ENTITY_LIST",
    "HIDDEN_ENTITIES",
    "SUMMARY",
    "TENANT_METADATA",
    "TERMINAL_RESULTS",
    "CacheEntry",
    "CacheNamespace",
    "TenantCache",
    "namespaces_from_config"
]
