from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Iterable, List, Optional, Sequence

from .base import SerpExecutor
from .captcha import CaptchaGate
from .config import HttpSettings
from .models import ScrapeOutcome, ScrapeStatus, Search
from .proxy import ProxyRotator

logger = logging.getLogger(__name__)


class WorkerPool:
    """Fixed set of worker threads draining a queue of searches.

    Each worker loops: check the stop condition, take the next search
    (waiting at most poll_interval_secs), pick a proxy, run the query, and
    hand successful results to handle_result. A failed search is not
    retried; it stays unprocessed.

    The pool stops once every search has been processed, every search has
    been taken, or cancel() was called."""

    def __init__(
        self,
        units: Iterable[Search],
        executors: Sequence[SerpExecutor],
        rotator: ProxyRotator,
        captcha_gate: CaptchaGate,
        http: HttpSettings,
        handle_result: Callable[[Search, ScrapeOutcome], None],
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_captchas: Optional[Callable[[int], None]] = None,
        poll_interval_secs: float = 0.5,
        name: str = "serp",
    ) -> None:
        if not executors:
            raise ValueError("WorkerPool needs at least one executor")
        self._queue: queue.Queue[Search] = queue.Queue()
        for unit in units:
            self._queue.put(unit)
        self._total = self._queue.qsize()
        self._executors = list(executors)
        self._rotator = rotator
        self._captcha_gate = captcha_gate
        self._http = http
        self._handle_result = handle_result
        self._on_progress = on_progress
        self._on_captchas = on_captchas
        self._poll_interval = poll_interval_secs
        self._name = name

        self._lock = threading.Lock()
        self._processed = 0
        self._taken = 0
        self._cancelled = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def total(self) -> int:
        return self._total

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        for i, executor in enumerate(self._executors):
            thread = threading.Thread(target=self._work, args=(executor,), name=f"{self._name}-{i}")
            self._threads.append(thread)
            thread.start()

    def join(self) -> None:
        """Wait for every worker. An interrupt cancels the run and the wait starts over."""
        while True:
            try:
                for thread in self._threads:
                    thread.join()
                return
            except KeyboardInterrupt:
                logger.warning("interrupted, waiting for %d workers to stop", len(self._threads))
                self.cancel()

    def cancel(self) -> None:
        self._cancelled.set()
        for executor in self._executors:
            executor.interrupt()

    def should_stop(self) -> bool:
        if self._cancelled.is_set():
            return True
        with self._lock:
            return self._processed >= self._total

    def _work(self, executor: SerpExecutor) -> None:
        while not self.should_stop():
            try:
                search = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                with self._lock:
                    if self._taken >= self._total:
                        return
                continue
            with self._lock:
                self._taken += 1
            try:
                self._run_unit(executor, search)
            except Exception:  # noqa: BLE001
                logger.exception("search %d (%s) failed unexpectedly", search.id, search.keyword)

    def _run_unit(self, executor: SerpExecutor, search: Search) -> None:
        proxy = self._rotator.next()
        if proxy is None:
            logger.warning("no proxy left, search %d (%s) not checked", search.id, search.keyword)
            return

        outcome = executor.execute(search, proxy, self._captcha_gate, self._http)
        if outcome.captchas and self._on_captchas:
            self._on_captchas(outcome.captchas)

        if not outcome.ok:
            if outcome.status is ScrapeStatus.ERROR_PROXY:
                self._rotator.evict(proxy)
            logger.warning(
                "search %d (%s) via %s failed: %s %s",
                search.id, search.keyword, proxy, outcome.status.value, outcome.reason,
            )
            return

        self._handle_result(search, outcome)
        with self._lock:
            self._processed += 1
            # progress is reported under the lock so it never goes backwards
            if self._on_progress:
                self._on_progress(self._processed, self._total)
