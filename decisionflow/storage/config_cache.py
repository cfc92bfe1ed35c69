from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Generic, Mapping, Optional, TypeVar

from decisionflow.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ConfigCache(Generic[T]):
    """Keyed configuration cache refreshed from an injected loader.

    ``loader`` returns the complete key -> value mapping. ``get`` reloads
    when the cache was never filled or is older than ``ttl_seconds``; a
    ``ttl_seconds`` of 0 reloads on every lookup. ``clock`` is a monotonic
    seconds source and exists so tests can move time forward.
    """

    def __init__(
        self,
        loader: Callable[[], Mapping[str, T]],
        *,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
        name: str = "config",
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.name = name
        self._entries: Dict[str, T] = {}
        self._loaded_at: Optional[float] = None
        self.last_refreshed_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def refresh(self) -> None:
        entries = dict(self._loader())
        with self._lock:
            self._entries = entries
            self._loaded_at = self._clock()
            self.last_refreshed_at = datetime.now(timezone.utc)
        logger.debug("config_cache_refreshed", cache=self.name, entries=len(entries))

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def is_stale(self) -> bool:
        with self._lock:
            loaded_at = self._loaded_at
        if loaded_at is None:
            return True
        return self._clock() - loaded_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[T]:
        if self.is_stale():
            self.refresh()
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> list[str]:
        if self.is_stale():
            self.refresh()
        with self._lock:
            return sorted(self._entries)
