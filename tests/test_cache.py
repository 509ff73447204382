"""
Tests for the tenant-scoped TTL cache.

Covers TTL boundaries, tenant isolation, corrupt entry purging and
best-effort writes using a real cache directory and an injected clock.
"""

import json
import pytest
from unittest.mock import patch

from core.cache.store import (
    ENTITY_LIST,
    CacheEntry,
    CacheNamespace,
    TenantCache,
    namespaces_from_config,
)
from core.models.config import CacheConfig
from core.models.entities import Entity


class TestCacheEntry:
    """Test CacheEntry expiry and serialization"""

    def test_expiry_boundary(self):
        entry = CacheEntry(data=1, timestamp=100.0, tenant_key="a")
        assert entry.is_expired(160.0, ttl=60) is False
        assert entry.is_expired(160.1, ttl=60) is True

    def test_roundtrip(self):
        entry = CacheEntry(data={"x": 1}, timestamp=5.0, tenant_key="t")
        assert CacheEntry.from_dict(entry.to_dict()) == entry

    def test_from_dict_missing_fields(self):
        with pytest.raises(KeyError):
            CacheEntry.from_dict({"data": 1})


class TestNamespaces:
    """Test namespace construction"""

    def test_ttls_from_config(self, tmp_path):
        config = CacheConfig(cache_dir=tmp_path, entity_list_ttl=10, summary_ttl=20)
        namespaces = namespaces_from_config(config)

        assert namespaces[ENTITY_LIST].ttl == 10
        assert namespaces["summary"].ttl == 20
        assert set(namespaces) == {"entity_list", "terminal_results", "summary", "tenant_metadata", "hidden_entities"}

    def test_key_for(self):
        ns = CacheNamespace("terminal_results", 30)
        assert ns.key_for() == "terminal_results"
        assert ns.key_for("p1") == "terminal_results:p1"


class TestTenantCache:
    """Test TenantCache get/set semantics"""

    @pytest.fixture
    def cache(self, tmp_path, clock):
        return TenantCache(tmp_path / "cache", clock=clock)

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        await cache.set("k", {"value": 42}, "tenant-a")
        assert await cache.get("k", "tenant-a", ttl=60) == {"value": 42}

    @pytest.mark.asyncio
    async def test_missing_key(self, cache):
        assert await cache.get("nope", "tenant-a", ttl=60) is None

    @pytest.mark.asyncio
    async def test_ttl_boundary(self, cache, clock):
        """Retrievable just before the TTL elapses, purged just after"""
        await cache.set("k", "v", "tenant-a")

        clock.advance(60 - 0.001)
        assert await cache.get("k", "tenant-a", ttl=60) == "v"

        clock.advance(0.002)
        assert await cache.get("k", "tenant-a", ttl=60) is None
        assert not cache._path("k").exists()

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, cache):
        """An entry written for one tenant is absent for another, even when fresh"""
        await cache.set("k", "secret", "tenant-a")

        assert await cache.get("k", "tenant-b", ttl=3600) is None
        # Purged on the mismatched read
        assert await cache.get("k", "tenant-a", ttl=3600) is None

    @pytest.mark.asyncio
    async def test_corrupt_json_purged(self, cache):
        await cache.set("k", "v", "tenant-a")
        cache._path("k").write_text("{not json")

        assert await cache.get("k", "tenant-a", ttl=60) is None
        assert not cache._path("k").exists()

    @pytest.mark.asyncio
    async def test_missing_fields_purged(self, cache):
        cache.cache_dir.mkdir(parents=True, exist_ok=True)
        cache._path("k").write_text(json.dumps({"data": 1}))

        assert await cache.get("k", "tenant-a", ttl=60) is None
        assert not cache._path("k").exists()

    @pytest.mark.asyncio
    async def test_parse_failure_purged(self, cache):
        """A parse callable that raises marks the entry corrupt"""
        await cache.set("k", [{"no_id": True}], "tenant-a")

        parse = lambda data: [Entity.model_validate(item) for item in data]
        assert await cache.get("k", "tenant-a", ttl=60, parse=parse) is None
        assert not cache._path("k").exists()

    @pytest.mark.asyncio
    async def test_parse_applied(self, cache, make_entity):
        entity = make_entity("p1")
        await cache.set("k", [entity.model_dump(mode="json")], "tenant-a")

        parse = lambda data: [Entity.model_validate(item) for item in data]
        loaded = await cache.get("k", "tenant-a", ttl=60, parse=parse)

        assert loaded == [entity]

    @pytest.mark.asyncio
    async def test_unserializable_write_swallowed(self, cache):
        """Write failures never raise"""
        await cache.set("k", {"bad": object()}, "tenant-a")

        assert await cache.get("k", "tenant-a", ttl=60) is None
        assert cache.get_stats()["write_failures"] == 1

    @pytest.mark.asyncio
    async def test_os_error_on_write_swallowed(self, cache):
        with patch("aiofiles.open", side_effect=OSError("disk full")):
            await cache.set("k", "v", "tenant-a")

        assert cache.get_stats()["write_failures"] == 1

    @pytest.mark.asyncio
    async def test_overwrite_refreshes_timestamp(self, cache, clock):
        await cache.set("k", "old", "tenant-a")
        clock.advance(50)
        await cache.set("k", "new", "tenant-a")
        clock.advance(50)

        assert await cache.get("k", "tenant-a", ttl=60) == "new"

    @pytest.mark.asyncio
    async def test_namespace_load_store(self, cache, clock):
        ns = CacheNamespace("summary", ttl=10)
        await cache.store(ns, {"summary": "ok"}, "tenant-a")

        assert await cache.load(ns, "tenant-a") == {"summary": "ok"}
        clock.advance(11)
        assert await cache.load(ns, "tenant-a") is None

    @pytest.mark.asyncio
    async def test_disabled_cache(self, tmp_path):
        cache = TenantCache(tmp_path, enabled=False)
        await cache.set("k", "v", "tenant-a")
        assert await cache.get("k", "tenant-a", ttl=60) is None
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, cache):
        await cache.set("a", 1, "t")
        await cache.set("b", 2, "t")

        assert await cache.remove("a") is True
        assert await cache.remove("a") is False
        assert await cache.clear() == 1
