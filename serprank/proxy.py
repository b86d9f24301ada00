from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Optional

from .models import DIRECT, ProxyEntry

logger = logging.getLogger(__name__)


class ProxyRotator:
    """Thread-safe round-robin over the egress routes still alive in a run.

    Evicted entries never come back; next() returns None once every entry
    has been evicted."""

    def __init__(self, proxies: Iterable[ProxyEntry]) -> None:
        self._lock = threading.Lock()
        self._alive: List[ProxyEntry] = list(proxies)
        self._initial = len(self._alive)
        self._index = 0

    @classmethod
    def with_fallback(cls, proxies: Iterable[ProxyEntry]) -> "ProxyRotator":
        """Build a rotator, substituting a direct connection when none are configured."""
        proxies = list(proxies)
        if not proxies:
            logger.warning("no proxy configured, using direct connection")
            proxies.append(DIRECT)
        return cls(proxies)

    def next(self) -> Optional[ProxyEntry]:
        with self._lock:
            if not self._alive:
                return None
            self._index %= len(self._alive)
            proxy = self._alive[self._index]
            self._index += 1
            return proxy

    def evict(self, proxy: ProxyEntry) -> bool:
        """Remove proxy for the rest of the run. Returns False if already gone."""
        with self._lock:
            try:
                pos = self._alive.index(proxy)
            except ValueError:
                return False
            del self._alive[pos]
            # keep the cursor on the entry that followed the evicted one
            if pos < self._index:
                self._index -= 1
            remaining = len(self._alive)
        logger.warning("proxy %s evicted, %d remaining", proxy, remaining)
        return True

    def alive_count(self) -> int:
        with self._lock:
            return len(self._alive)

    def evicted_count(self) -> int:
        with self._lock:
            return self._initial - len(self._alive)

    def list(self) -> List[ProxyEntry]:
        with self._lock:
            return list(self._alive)
