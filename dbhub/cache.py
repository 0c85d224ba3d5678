"""TTL result cache backed by the metadata DuckDB.

Caching is an optimization only: a failing or corrupt cache degrades to a
miss and never fails the request that consulted it.
"""

import json
import time
from typing import Any, Callable

import structlog

from dbhub import metrics
from dbhub.database import MetadataDB

logger = structlog.get_logger()


def _namespace(key: str) -> str:
    return key.split("-", 1)[0]


class ResultCache:
    """
    Key/value cache with per-entry TTL.

    Entries carry their creation time and TTL. An entry older than its TTL
    is a miss even while it is still stored; purge_expired() removes those
    rows physically.

    Args:
        metadata: Metadata database holding the cache_entries table
        clock: Returns the current time in epoch seconds
    """

    def __init__(self, metadata: MetadataDB, clock: Callable[[], float] = time.time):
        self._metadata = metadata
        self._clock = clock

    def get(self, key: str) -> tuple[bytes | None, bool]:
        """
        Look up a key.

        Returns:
            (value, found). found is False on miss, on expiry and on any
            backend error.
        """
        namespace = _namespace(key)
        try:
            entry = self._metadata.get_cache_entry(key)
        except Exception as e:
            metrics.CACHE_ERRORS.labels(operation="get").inc()
            logger.warning("cache_get_failed", namespace=namespace, error=str(e))
            return None, False

        if entry is None:
            metrics.CACHE_MISSES.labels(namespace=namespace).inc()
            return None, False

        value, created_at, ttl_seconds = entry
        if self._clock() - created_at >= ttl_seconds:
            metrics.CACHE_MISSES.labels(namespace=namespace).inc()
            logger.debug("cache_entry_expired", namespace=namespace)
            return None, False

        metrics.CACHE_HITS.labels(namespace=namespace).inc()
        return value, True

    def put(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        """
        Store a value. Failures are logged and reported as False.
        """
        try:
            self._metadata.put_cache_entry(key, value, self._clock(), ttl_seconds)
        except Exception as e:
            metrics.CACHE_ERRORS.labels(operation="put").inc()
            logger.warning("cache_put_failed", namespace=_namespace(key), error=str(e))
            return False
        return True

    def get_json(self, key: str) -> tuple[Any, bool]:
        """Like get(), decoding a JSON payload. Undecodable entries are misses."""
        value, found = self.get(key)
        if not found:
            return None, False
        try:
            return json.loads(value), True
        except (UnicodeDecodeError, ValueError) as e:
            metrics.CACHE_ERRORS.labels(operation="decode").inc()
            logger.warning("cache_entry_corrupt", namespace=_namespace(key), error=str(e))
            return None, False

    def put_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        return self.put(key, json.dumps(value).encode("utf-8"), ttl_seconds)

    def invalidate(self, *keys: str) -> None:
        """Drop entries ahead of their TTL. Failures are logged."""
        try:
            self._metadata.delete_cache_entries(list(keys))
        except Exception as e:
            metrics.CACHE_ERRORS.labels(operation="invalidate").inc()
            logger.warning("cache_invalidate_failed", error=str(e))

    def purge_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""
        try:
            return self._metadata.delete_expired_cache_entries(self._clock())
        except Exception as e:
            metrics.CACHE_ERRORS.labels(operation="purge").inc()
            logger.error("cache_purge_failed", error=str(e))
            return 0
