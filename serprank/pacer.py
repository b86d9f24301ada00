from __future__ import annotations

import random
import threading
import time
from typing import Dict

from .models import ProxyEntry


class RequestPacer:
    """Thread-safe random pause between consecutive requests on one route.

    Each route gets its own next-allowed time, drawn uniformly between
    min_secs and max_secs after the previous request on that route, so
    workers on different proxies never wait for each other."""

    def __init__(self, min_secs: float = 0.0, max_secs: float = 0.0) -> None:
        self._min = max(0.0, min_secs)
        self._max = max(self._min, max_secs)
        self._lock = threading.Lock()
        self._next_allowed: Dict[int, float] = {}

    @property
    def enabled(self) -> bool:
        return self._max > 0

    def wait(self, proxy: ProxyEntry) -> float:
        """Block until proxy may be used again. Returns the seconds slept."""
        if not self.enabled:
            return 0.0
        with self._lock:
            now = time.time()
            start = max(now, self._next_allowed.get(proxy.id, 0.0))
            self._next_allowed[proxy.id] = start + random.uniform(self._min, self._max)
        delay = start - now
        if delay > 0:
            time.sleep(delay)
        return max(delay, 0.0)
