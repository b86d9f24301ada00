from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

UNRANKED = 32767

DAY_OFFSETS: Tuple[int, ...] = (1, 7, 30, 90)

TOP_LIST_SIZE = 5


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE_SUCCESS = "DONE_SUCCESS"
    DONE_WITH_ERROR = "DONE_WITH_ERROR"


@dataclass
class Run:
    """One execution of the rank check.

    id == 0 marks an ad-hoc run that was never stored and cannot be resumed."""

    id: int
    day: date
    started: datetime
    status: RunStatus = RunStatus.RUNNING
    progress: int = 0
    errors: int = 0
    captchas: int = 0
    finished: Optional[datetime] = None

    @property
    def is_persisted(self) -> bool:
        return self.id != 0


@dataclass(frozen=True)
class Search:
    id: int
    keyword: str
    group_ids: Tuple[int, ...] = ()
    country: Optional[str] = None
    device: Optional[str] = None


class PatternType(str, Enum):
    DOMAIN = "DOMAIN"
    SUBDOMAIN = "SUBDOMAIN"
    REGEX = "REGEX"


@dataclass(frozen=True)
class Target:
    """A tracked URL pattern inside a group."""

    id: int
    group_id: int
    name: str
    pattern: str
    pattern_type: PatternType = PatternType.DOMAIN

    def match(self, url: str) -> bool:
        if self.pattern_type is PatternType.REGEX:
            return re.search(self.pattern, url) is not None

        host = _host_of(url)
        if not host:
            return False
        pattern = self.pattern.lower()
        if self.pattern_type is PatternType.DOMAIN:
            return host == pattern
        pattern = pattern.lstrip(".")
        return host == pattern or host.endswith("." + pattern)


def _host_of(url: str) -> str:
    # urlsplit only fills netloc when a scheme or leading // is present
    if "//" not in url:
        url = "//" + url
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


@dataclass(frozen=True)
class SerpEntry:
    url: str
    history: Dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SerpSnapshot:
    run_id: int
    search_id: int
    timestamp: datetime
    entries: Tuple[SerpEntry, ...] = ()

    def position_of(self, url: str) -> Optional[int]:
        """Return the 1-based position of url in this snapshot, or None."""
        for i, entry in enumerate(self.entries, start=1):
            if entry.url == url:
                return i
        return None


@dataclass(frozen=True)
class RankRecord:
    run_id: int
    group_id: int
    target_id: int
    search_id: int
    rank: int
    previous_rank: int
    url: Optional[str]

    @property
    def diff(self) -> Optional[int]:
        """Positive when the target moved up since the previous run."""
        if self.rank == UNRANKED or self.previous_rank == UNRANKED:
            return None
        return self.previous_rank - self.rank


@dataclass(frozen=True)
class BestRank:
    group_id: int
    target_id: int
    search_id: int
    rank: int
    run_day: Optional[datetime]
    url: Optional[str]


@dataclass
class TargetSummary:
    """Per (run, target) running totals, mutated by every worker."""

    group_id: int
    target_id: int
    run_id: int
    previous_score_bp: int = 0
    total_top3: int = 0
    total_top10: int = 0
    total_top100: int = 0
    total_out: int = 0
    score_raw: int = 0
    score_bp: int = 0
    top_ranks: List[RankRecord] = field(default_factory=list)
    top_improvements: List[RankRecord] = field(default_factory=list)
    top_losts: List[RankRecord] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_rank_candidate(self, record: RankRecord) -> None:
        with self.lock:
            rank = record.rank
            if rank == UNRANKED or rank > 100:
                self.total_out += 1
            elif rank <= 3:
                self.total_top3 += 1
            elif rank <= 10:
                self.total_top10 += 1
            else:
                self.total_top100 += 1

            if rank <= 100:
                self.score_raw += 101 - rank
                _keep_best(self.top_ranks, record, key=lambda r: r.rank)

            diff = record.diff
            if diff is not None and diff > 0:
                _keep_best(self.top_improvements, record, key=lambda r: -r.diff)
            elif diff is not None and diff < 0:
                _keep_best(self.top_losts, record, key=lambda r: r.diff)

    def compute_score_bp(self, n_search: int) -> int:
        with self.lock:
            if n_search <= 0:
                self.score_bp = 0
            else:
                self.score_bp = min(10000, self.score_raw * 100 // n_search)
            return self.score_bp


def _keep_best(items: List[RankRecord], record: RankRecord, key) -> None:
    items.append(record)
    items.sort(key=lambda r: (key(r), r.search_id))
    del items[TOP_LIST_SIZE:]


@dataclass(frozen=True)
class ProxyEntry:
    id: int
    scheme: str = "http"
    host: str = ""
    port: int = 0
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return not self.host

    def as_proxies(self) -> Optional[Dict[str, str]]:
        """Return the proxies mapping HTTP clients accept, None for direct."""
        if self.is_direct:
            return None
        auth = ""
        if self.username:
            auth = f"{self.username}:{self.password or ''}@"
        url = f"{self.scheme}://{auth}{self.host}:{self.port}"
        return {"http": url, "https": url}

    def __str__(self) -> str:
        if self.is_direct:
            return "direct"
        return f"{self.scheme}://{self.host}:{self.port}"


DIRECT = ProxyEntry(id=0)


class ScrapeStatus(str, Enum):
    OK = "OK"
    ERROR_NETWORK = "ERROR_NETWORK"
    ERROR_PROXY = "ERROR_PROXY"
    ERROR_CAPTCHA = "ERROR_CAPTCHA"
    ERROR_PARSE = "ERROR_PARSE"
    INTERRUPTED = "INTERRUPTED"


@dataclass(frozen=True)
class ScrapeOutcome:
    status: ScrapeStatus
    urls: Tuple[str, ...] = ()
    captchas: int = 0
    reason: Optional[str] = None
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ScrapeStatus.OK

    @classmethod
    def success(cls, urls, captchas: int = 0, latency_ms: int = 0) -> "ScrapeOutcome":
        return cls(ScrapeStatus.OK, tuple(urls), captchas, None, latency_ms)

    @classmethod
    def failure(
        cls, status: ScrapeStatus, reason: str, captchas: int = 0, latency_ms: int = 0
    ) -> "ScrapeOutcome":
        return cls(status, (), captchas, reason, latency_ms)


@dataclass(frozen=True)
class MetricsSnapshot:
    total_attempts: int
    success_count: int
    network_error_count: int
    proxy_error_count: int
    captcha_error_count: int
    other_error_count: int
    captcha_count: int
    avg_latency_ms: float
    timestamp: float
