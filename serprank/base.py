from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from .captcha import CaptchaGate
from .config import HttpSettings
from .metrics import MetricsCollector
from .models import ProxyEntry, ScrapeOutcome, ScrapeStatus, Search
from .pacer import RequestPacer


class ProxyFailure(Exception):
    """The route itself is unusable (refused, auth rejected, tunnel failed)."""


class CaptchaFailure(Exception):
    """A captcha page was served and could not be solved."""


class Interrupted(Exception):
    """The run asked this executor to stop."""


class SerpExecutor(ABC):
    """Performs one search query and returns the ordered result URLs.

    execute() never raises for network trouble: every failure comes back as
    a ScrapeOutcome so the worker decides what to do with the unit.

    An instance belongs to a single worker thread; captcha attempts for the
    query in flight are counted on the instance."""

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        pacer: Optional[RequestPacer] = None,
    ) -> None:
        self._metrics = metrics
        self._pacer = pacer
        self._interrupted = threading.Event()
        self._captchas = 0

    def execute(
        self,
        search: Search,
        proxy: ProxyEntry,
        captcha_gate: CaptchaGate,
        http: HttpSettings,
    ) -> ScrapeOutcome:
        start_ms = self._now_ms()
        self._captchas = 0

        try:
            self.validate(search)
            self.check_interrupted()
            if self._pacer:
                self._pacer.wait(proxy)
            response = self.fetch(search, proxy, captcha_gate, http)
            try:
                urls = self.parse(response)
            except Exception as parse_exc:  # noqa: BLE001
                outcome = self._failure(ScrapeStatus.ERROR_PARSE, parse_exc, start_ms)
            else:
                outcome = ScrapeOutcome.success(urls, self._captchas, self._now_ms() - start_ms)
        except ProxyFailure as exc:
            outcome = self._failure(ScrapeStatus.ERROR_PROXY, exc, start_ms)
        except CaptchaFailure as exc:
            outcome = self._failure(ScrapeStatus.ERROR_CAPTCHA, exc, start_ms)
        except Interrupted as exc:
            outcome = self._failure(ScrapeStatus.INTERRUPTED, exc, start_ms)
        except Exception as exc:  # noqa: BLE001
            outcome = self._failure(ScrapeStatus.ERROR_NETWORK, exc, start_ms)

        if self._metrics:
            self._metrics.record_outcome(outcome)
        return outcome

    def interrupt(self) -> None:
        """Best effort: stops before the next request stage, not mid-I/O."""
        self._interrupted.set()

    def check_interrupted(self) -> None:
        if self._interrupted.is_set():
            raise Interrupted("run cancelled")

    def count_captcha(self) -> None:
        self._captchas += 1

    def validate(self, search: Search) -> None:
        if not search.keyword:
            raise ValueError("search.keyword is required")

    @abstractmethod
    def fetch(
        self,
        search: Search,
        proxy: ProxyEntry,
        captcha_gate: CaptchaGate,
        http: HttpSettings,
    ) -> Any:
        ...

    @abstractmethod
    def parse(self, response: Any) -> List[str]:
        ...

    def _failure(self, status: ScrapeStatus, exc: Exception, start_ms: int) -> ScrapeOutcome:
        reason = str(exc) or type(exc).__name__
        return ScrapeOutcome.failure(status, f"{type(exc).__name__}: {reason}", self._captchas, self._now_ms() - start_ms)

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)
