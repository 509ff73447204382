"""
Tenant-scoped TTL cache over a persistent local store.

Each key is one JSON file holding ``{data, timestamp, tenant_key}``. Entries
are only served while fresh and only to the tenant that wrote them; anything
else (expired, foreign tenant, unreadable) is deleted on read and reported
as a miss. The cache never raises: a failing cache degrades to no cache.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import aiofiles

from ..models.config import CacheConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

_UNSAFE_KEY_CHARS = re.compile(r'[^A-Za-z0-9_.-]')


@dataclass
class CacheEntry(Generic[T]):
    """Stored value with its write time and owning tenant"""
    data: T
    timestamp: float
    tenant_key: str

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_expired(self, now: float, ttl: float) -> bool:
        """Fresh up to and including ``ttl`` seconds after the write"""
        return self.age(now) > ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data': self.data,
            'timestamp': self.timestamp,
            'tenant_key': self.tenant_key
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'CacheEntry':
        """
        Raises:
            KeyError, TypeError, ValueError: on missing or malformed fields
        """
        if not isinstance(raw, dict):
            raise TypeError(f"Cache entry must be an object, got {type(raw).__name__}")
        return cls(
            data=raw['data'],
            timestamp=float(raw['timestamp']),
            tenant_key=str(raw['tenant_key'])
        )


@dataclass(frozen=True)
class CacheNamespace:
    """A fixed key prefix for one class of data with its own TTL"""
    key: str
    ttl: float

    def key_for(self, suffix: Optional[str] = None) -> str:
        return f"{self.key}:{suffix}" if suffix else self.key


ENTITY_LIST = "entity_list"
TERMINAL_RESULTS = "terminal_results"
SUMMARY = "summary"
TENANT_METADATA = "tenant_metadata"
HIDDEN_ENTITIES = "hidden_entities"


def namespaces_from_config(config: CacheConfig) -> Dict[str, CacheNamespace]:
    """Build the cache namespaces with their configured TTLs"""
    return {
        ENTITY_LIST: CacheNamespace(ENTITY_LIST, config.entity_list_ttl),
        TERMINAL_RESULTS: CacheNamespace(TERMINAL_RESULTS, config.terminal_results_ttl),
        SUMMARY: CacheNamespace(SUMMARY, config.summary_ttl),
        TENANT_METADATA: CacheNamespace(TENANT_METADATA, config.tenant_metadata_ttl),
        HIDDEN_ENTITIES: CacheNamespace(HIDDEN_ENTITIES, config.hidden_entities_ttl),
    }


class TenantCache:
    """
    Persistent key/value cache with TTL and tenant isolation.

    Features:
    - One JSON file per key, written atomically (temp file then rename)
    - Expired, foreign-tenant and corrupt entries purged on read
    - Write failures logged and swallowed
    - Injectable clock for deterministic expiry
    """

    def __init__(
        self,
        cache_dir: Path,
        clock: Callable[[], float] = time.time,
        enabled: bool = True
    ):
        """
        Initialize cache.

        Args:
            cache_dir: Directory holding the entry files
            clock: Returns the current time in seconds
            enabled: When False every read misses and writes are dropped
        """
        self.cache_dir = Path(cache_dir)
        self.clock = clock
        self.enabled = enabled
        self._lock = asyncio.Lock()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._purges = 0
        self._write_failures = 0

    @classmethod
    def from_config(cls, config: CacheConfig, clock: Callable[[], float] = time.time) -> 'TenantCache':
        return cls(config.cache_dir, clock=clock, enabled=config.enabled)

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    async def get(
        self,
        key: str,
        tenant_key: str,
        ttl: float,
        parse: Optional[Callable[[Any], T]] = None
    ) -> Optional[T]:
        """
        Read a value.

        Args:
            key: Cache key
            tenant_key: Currently active tenant
            ttl: Maximum age in seconds
            parse: Optional converter applied to the stored data; if it
                raises, the entry is treated as corrupt

        Returns:
            Cached value or None if absent, expired, foreign or corrupt
        """
        if not self.enabled:
            return None

        path = self._path(key)
        async with self._lock:
            try:
                async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                    content = await f.read()
            except FileNotFoundError:
                self._misses += 1
                return None
            except OSError as e:
                logger.warning(f"Failed to read cache entry {key}: {e}")
                self._misses += 1
                return None

            try:
                entry = CacheEntry.from_dict(json.loads(content))
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"Corrupt cache entry {key}: {e}")
                self._purge(path, key)
                return None

            if entry.tenant_key != tenant_key:
                logger.debug(f"Cache entry {key} belongs to another tenant")
                self._purge(path, key)
                return None

            if entry.is_expired(self.clock(), ttl):
                logger.debug(f"Cache entry {key} expired")
                self._purge(path, key)
                return None

            if parse is None:
                self._hits += 1
                return entry.data

            try:
                value = parse(entry.data)
            except Exception as e:
                logger.debug(f"Cache entry {key} failed to parse: {e}")
                self._purge(path, key)
                return None

            self._hits += 1
            return value

    async def set(self, key: str, data: Any, tenant_key: str) -> None:
        """
        Write a value. Never raises.

        Args:
            key: Cache key
            data: JSON-serializable value
            tenant_key: Tenant that owns the value
        """
        if not self.enabled:
            return

        entry = CacheEntry(data=data, timestamp=self.clock(), tenant_key=tenant_key)
        path = self._path(key)
        temp_file = path.with_suffix('.tmp')

        async with self._lock:
            try:
                payload = json.dumps(entry.to_dict())
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                    await f.write(payload)
                temp_file.replace(path)
            except (OSError, TypeError, ValueError) as e:
                self._write_failures += 1
                logger.warning(f"Failed to write cache entry {key}: {e}")
                try:
                    temp_file.unlink()
                except OSError:
                    pass

    async def load(
        self,
        namespace: CacheNamespace,
        tenant_key: str,
        suffix: Optional[str] = None,
        parse: Optional[Callable[[Any], T]] = None
    ) -> Optional[T]:
        """Read from a namespace using its TTL"""
        return await self.get(namespace.key_for(suffix), tenant_key, namespace.ttl, parse=parse)

    async def store(
        self,
        namespace: CacheNamespace,
        data: Any,
        tenant_key: str,
        suffix: Optional[str] = None
    ) -> None:
        await self.set(namespace.key_for(suffix), data, tenant_key)

    async def remove(self, key: str) -> bool:
        """Delete one entry. Returns True if it existed."""
        async with self._lock:
            path = self._path(key)
            if not path.exists():
                return False
            self._purge(path, key)
            return True

    async def clear(self) -> int:
        """Delete every entry. Returns the number removed."""
        removed = 0
        async with self._lock:
            if not self.cache_dir.exists():
                return 0
            for path in self.cache_dir.glob('*.json'):
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning(f"Failed to remove cache file {path}: {e}")
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def _purge(self, path: Path, key: str) -> None:
        self._misses += 1
        self._purges += 1
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to purge cache entry {key}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total = self._hits + self._misses
        return {
            'enabled': self.enabled,
            'hits': self._hits,
            'misses': self._misses,
            'purges': self._purges,
            'write_failures': self._write_failures,
            'hit_rate': self._hits / total if total > 0 else 0.0
        }
