"""
In-memory cache of decrypted channel credentials.

Entries are keyed by channel row id and tagged with the credentials version
they were decrypted from. Replacing a channel's credentials bumps the version
in the store, so a stale entry is never served: the next lookup sees a version
mismatch and reloads.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from channel_core.metrics import credential_cache_hits, credential_cache_misses
from channel_core.utils.datetime import utc_now


class CredentialCache:
    """
    Thread-safe credential cache with version check and time-to-live.

    Attributes:
        ttl: Time-to-live for cached entries
        _cache: channel pk -> (version, credentials, expires_at)

    Example:
        >>> cache = CredentialCache(ttl_seconds=3600)
        >>> cache.set("ch-1", 2, {"api_key": "abc"})
        >>> cache.get("ch-1", 2)
        {'api_key': 'abc'}
        >>> cache.get("ch-1", 3) is None
        True
    """

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._cache: dict[str, tuple[int, dict[str, Any], datetime]] = {}
        self._lock = threading.Lock()

    def get(self, channel_pk: str, version: int) -> Optional[dict[str, Any]]:
        """
        Get cached credentials if present, unexpired and of the given version.

        Args:
            channel_pk: Channel row id
            version: Credentials version currently in the store

        Returns:
            A copy of the credentials, or None on a miss
        """
        with self._lock:
            entry = self._cache.get(channel_pk)
            if entry is not None:
                cached_version, credentials, expires_at = entry
                if cached_version == version and utc_now() < expires_at:
                    credential_cache_hits.inc()
                    return dict(credentials)
                # Stale version or expired
                del self._cache[channel_pk]
        credential_cache_misses.inc()
        return None

    def set(self, channel_pk: str, version: int, credentials: dict[str, Any]) -> None:
        with self._lock:
            self._cache[channel_pk] = (version, dict(credentials), utc_now() + self.ttl)

    def invalidate(self, channel_pk: str) -> None:
        """Remove a channel's entry, e.g. after its credentials were replaced."""
        with self._lock:
            self._cache.pop(channel_pk, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._cache)
