from __future__ import annotations

import json
import logging
import random
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .aggregator import ResultAggregator
from .captcha import CaptchaGate, captcha_scope
from .config import RunOptions
from .controller import WorkerPool
from .factory import ExecutorFactory
from .metrics import MetricsCollector
from .models import DAY_OFFSETS, RankRecord, Run, RunStatus, ScrapeOutcome, Search, Target
from .pacer import RequestPacer
from .proxy import ProxyRotator
from .storage import RankStore
from .summary import SummaryAccumulator

logger = logging.getLogger(__name__)


class RunController:
    """Runs one rank check from setup to final status.

    Lifecycle: captcha gate up, options loaded, previous runs resolved,
    searches and targets loaded (unless supplied with set_custom_*),
    workers dispatched and joined, summaries finalized, captcha gate
    released, status decided. A run never aborts on a component failure:
    searches that could not be checked only turn DONE_SUCCESS into
    DONE_WITH_ERROR."""

    def __init__(
        self,
        store: RankStore,
        run: Run,
        executor_factory: Optional[ExecutorFactory] = None,
        captcha_gate: Optional[CaptchaGate] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._store = store
        self._run = run
        self._metrics = metrics or MetricsCollector()
        self._executor_factory = executor_factory or ExecutorFactory(metrics=self._metrics)
        self._captcha_gate = captcha_gate

        self.options: Optional[RunOptions] = None
        self.previous_run: Optional[Run] = None
        self.previous_runs_by_day: Dict[int, int] = {}
        self.targets_by_group: Dict[int, List[Target]] = {}
        self.summaries = SummaryAccumulator(run.id)
        self.searches: List[Search] = []
        self.results: List[RankRecord] = []

        self._custom_run = False
        self._custom_searches: List[Search] = []
        self._custom_targets: List[Target] = []
        self._results_lock = threading.Lock()
        self._captcha_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._pool: Optional[WorkerPool] = None
        self._rotator: Optional[ProxyRotator] = None

    @property
    def run(self) -> Run:
        return self._run

    def set_custom_searches(self, searches: List[Search]) -> None:
        """Check only these searches instead of loading them from the store."""
        self._custom_run = True
        self._custom_searches = list(searches)

    def set_custom_targets(self, targets: List[Target]) -> None:
        self._custom_run = True
        self._custom_targets = list(targets)

    def cancel(self) -> None:
        """Ask workers to stop taking new searches. In-flight ones get a best-effort interrupt."""
        self._cancelled.set()
        if self._pool is not None:
            self._pool.cancel()

    @property
    def processed(self) -> int:
        return self._pool.processed if self._pool is not None else 0

    @property
    def total(self) -> int:
        return self._pool.total if self._pool is not None else len(self.searches)

    def execute(self) -> RunStatus:
        with captcha_scope(self._captcha_gate) as gate:
            self._dispatch(gate)
        return self._finish()

    def _dispatch(self, gate: CaptchaGate) -> None:
        self.options = self._store.get_options()
        self.initialize_previous_runs()
        if self._custom_run:
            self.searches = list(self._custom_searches)
            self._track_targets(self._custom_targets)
        else:
            self.initialize_searches()
            self.initialize_targets()

        proxies = self._store.list_proxies()
        self._rotator = ProxyRotator.with_fallback(proxies)
        n_thread = self.options.max_threads
        alive = self._rotator.alive_count()
        if alive < n_thread:
            logger.info("less proxy (%d) than max thread (%d), setting thread number to %d", alive, n_thread, alive)
            n_thread = alive

        pacer = RequestPacer(self.options.min_pause_secs, self.options.max_pause_secs)
        executors = [self._executor_factory.create_executor(self.options, pacer) for _ in range(n_thread)]
        aggregator = ResultAggregator(
            store=self._store,
            run=self._run,
            targets_by_group=self.targets_by_group,
            summaries=self.summaries,
            previous_run=self.previous_run,
            previous_runs_by_day=self.previous_runs_by_day,
            on_rank=self._add_result,
        )

        def handle_result(search: Search, outcome: ScrapeOutcome) -> None:
            aggregator.process(search, outcome.urls)

        self._pool = WorkerPool(
            units=self.searches,
            executors=executors,
            rotator=self._rotator,
            captcha_gate=gate,
            http=self.options.http,
            handle_result=handle_result,
            on_progress=self._on_progress,
            on_captchas=self.inc_captcha_count,
            poll_interval_secs=self.options.poll_interval_secs,
        )
        if self._cancelled.is_set():
            self._pool.cancel()

        logger.info("run %d: %d searches, %d workers", self._run.id, self._pool.total, n_thread)
        self._pool.start()
        self._pool.join()

        self.summaries.finalize(self._store.count_searches_by_group(), self._store)

    def _finish(self) -> RunStatus:
        run = self._run
        total = self._pool.total
        processed = self._pool.processed
        remaining = total - processed
        if remaining > 0:
            run.errors = remaining
            run.status = RunStatus.DONE_WITH_ERROR
            logger.warning("%d searches have not been checked", remaining)
        else:
            run.errors = 0
            run.progress = 100
            run.status = RunStatus.DONE_SUCCESS
        run.finished = datetime.now()
        self._store.update_run(run)

        snapshot = self._metrics.snapshot()
        evicted = self._rotator.evicted_count()
        logger.warning("%d proxies failed during the run", evicted)
        logger.info(json.dumps({
            "event": "run_finished",
            "run_id": run.id,
            "status": run.status.value,
            "processed": processed,
            "total": total,
            "errors": run.errors,
            "captchas": run.captchas,
            "proxies_evicted": evicted,
            "attempts": snapshot.total_attempts,
            "avg_latency_ms": round(snapshot.avg_latency_ms, 1),
        }))
        return run.status

    def initialize_previous_runs(self) -> None:
        self.previous_run = self._store.find_previous_run(self._run.id)
        if self.previous_run is None:
            return
        for day in DAY_OFFSETS:
            past_runs = [
                r for r in self._store.find_runs_by_day(self._run.day - timedelta(days=day))
                if r.id != self._run.id
            ]
            if past_runs:
                self.previous_runs_by_day[day] = past_runs[0].id

    def initialize_searches(self) -> None:
        if self._run.is_persisted:
            searches = self._store.list_unchecked_searches(self._run.id)
        else:
            searches = self._store.list_searches()
        if self.options is not None and self.options.shuffle:
            random.shuffle(searches)
        self.searches = searches
        logger.info("%d searches to do", len(searches))

    def initialize_targets(self) -> None:
        self._track_targets(self._store.list_targets())
        if self._run.is_persisted:
            self.summaries.restore(self._store.list_summaries(self._run.id))

    def _track_targets(self, targets: List[Target]) -> None:
        previous_scores: Dict[int, int] = {}
        if self.previous_run is not None:
            previous_scores = self._store.previous_scores(self.previous_run.id)
        for target in targets:
            self.targets_by_group.setdefault(target.group_id, []).append(target)
            self.summaries.track(target, previous_scores.get(target.id, 0))

    def inc_captcha_count(self, captchas: int) -> None:
        with self._captcha_lock:
            self._run.captchas += captchas
            self._store.update_run_captchas(self._run)

    def _on_progress(self, processed: int, total: int) -> None:
        self._run.progress = int(processed * 100 / total)
        self._store.update_run_progress(self._run)

    def _add_result(self, record: RankRecord) -> None:
        with self._results_lock:
            self.results.append(record)
