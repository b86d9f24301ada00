from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict
from threading import Lock
from typing import Deque, Dict, List, Optional

from .models import MetricsSnapshot, ScrapeOutcome, ScrapeStatus


class MetricsCollector:
    """Thread-safe collector of scrape outcomes for one run.

    Every executor records its outcomes here; the run controller logs a
    snapshot when the run ends."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[tuple[float, ScrapeOutcome]] = deque(maxlen=maxlen)

    def record_outcome(self, outcome: ScrapeOutcome) -> None:
        """Record a scrape outcome with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), outcome))

    def snapshot(self, window_secs: Optional[int] = None) -> MetricsSnapshot:
        """Aggregate outcomes, all of them or those within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs if window_secs is not None else float("-inf")
        with self._lock:
            events: List[ScrapeOutcome] = [e for ts, e in self._events if ts >= cutoff]

        total = len(events)
        by_status: Dict[ScrapeStatus, int] = {}
        for e in events:
            by_status[e.status] = by_status.get(e.status, 0) + 1
        success_count = by_status.get(ScrapeStatus.OK, 0)
        network = by_status.get(ScrapeStatus.ERROR_NETWORK, 0)
        proxy = by_status.get(ScrapeStatus.ERROR_PROXY, 0)
        captcha = by_status.get(ScrapeStatus.ERROR_CAPTCHA, 0)

        return MetricsSnapshot(
            total_attempts=total,
            success_count=success_count,
            network_error_count=network,
            proxy_error_count=proxy,
            captcha_error_count=captcha,
            other_error_count=total - success_count - network - proxy - captcha,
            captcha_count=sum(e.captchas for e in events),
            avg_latency_ms=(sum(e.latency_ms for e in events) / total) if total else 0.0,
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded outcomes as a list of dictionaries."""
        with self._lock:
            return [
                {"timestamp": ts, **asdict(e), "status": e.status.value}
                for ts, e in self._events
            ]
