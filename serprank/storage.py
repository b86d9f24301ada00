from __future__ import annotations

import json
import queue
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import RunOptions
from .models import (
    UNRANKED,
    BestRank,
    ProxyEntry,
    RankRecord,
    Run,
    Search,
    SerpSnapshot,
    Target,
    TargetSummary,
)

RankKey = Tuple[int, int, int, int]
BestKey = Tuple[int, int, int]


class RankStore(ABC):
    """Storage collaborator of a run.

    Implementations must be safe to call from every worker thread."""

    @abstractmethod
    def get_options(self) -> RunOptions: ...

    @abstractmethod
    def list_proxies(self) -> List[ProxyEntry]: ...

    @abstractmethod
    def find_previous_run(self, run_id: int) -> Optional[Run]:
        """The run that immediately precedes run_id (the latest run for an ad-hoc id 0)."""

    @abstractmethod
    def find_runs_by_day(self, day: date) -> List[Run]:
        """Runs started on day, latest first."""

    @abstractmethod
    def update_run_progress(self, run: Run) -> None: ...

    @abstractmethod
    def update_run_captchas(self, run: Run) -> None: ...

    @abstractmethod
    def update_run(self, run: Run) -> None:
        """Persist the final status, error count and finish time."""

    @abstractmethod
    def list_searches(self) -> List[Search]: ...

    @abstractmethod
    def list_unchecked_searches(self, run_id: int) -> List[Search]:
        """Searches that have no snapshot yet for run_id."""

    @abstractmethod
    def count_searches_by_group(self) -> Dict[int, int]: ...

    @abstractmethod
    def list_targets(self) -> List[Target]: ...

    @abstractmethod
    def insert_serp(self, serp: SerpSnapshot) -> None: ...

    @abstractmethod
    def get_serp(self, run_id: int, search_id: int) -> Optional[SerpSnapshot]: ...

    @abstractmethod
    def insert_rank(self, rank: RankRecord) -> None:
        """Store a rank. A second record for the same key is an error, except
        under the ad-hoc run id 0, where it replaces the first."""

    @abstractmethod
    def get_rank(self, run_id: int, group_id: int, target_id: int, search_id: int) -> int:
        """Stored rank for the triple in run_id, UNRANKED when absent."""

    @abstractmethod
    def get_best(self, group_id: int, target_id: int, search_id: int) -> BestRank:
        """Best rank so far; rank is UNRANKED when the triple was never ranked."""

    @abstractmethod
    def insert_best(self, best: BestRank) -> None: ...

    @abstractmethod
    def insert_summaries(self, summaries: Iterable[TargetSummary]) -> None: ...

    @abstractmethod
    def list_summaries(self, run_id: int) -> List[TargetSummary]: ...

    @abstractmethod
    def previous_scores(self, run_id: int) -> Dict[int, int]:
        """target id -> score_bp of the summaries stored for run_id."""

    def close(self) -> None:
        """Flush pending writes and release resources."""


class MemoryRankStore(RankStore):
    """In-process store. Seed reference data with the add_* helpers."""

    def __init__(self, options: Optional[RunOptions] = None) -> None:
        self._lock = threading.RLock()
        self._options = options or RunOptions()
        self._runs: Dict[int, Run] = {}
        self._searches: Dict[int, Search] = {}
        self._targets: Dict[int, Target] = {}
        self._proxies: List[ProxyEntry] = []
        self._serps: Dict[Tuple[int, int], SerpSnapshot] = {}
        self._ranks: Dict[RankKey, RankRecord] = {}
        self._bests: Dict[BestKey, BestRank] = {}
        self._summaries: Dict[Tuple[int, int], TargetSummary] = {}

    # seeding

    def set_options(self, options: RunOptions) -> None:
        with self._lock:
            self._options = options

    def add_run(self, run: Run) -> Run:
        with self._lock:
            self._runs[run.id] = run
        return run

    def add_search(self, search: Search) -> None:
        with self._lock:
            self._searches[search.id] = search

    def add_target(self, target: Target) -> None:
        with self._lock:
            self._targets[target.id] = target

    def add_proxy(self, proxy: ProxyEntry) -> None:
        with self._lock:
            self._proxies.append(proxy)

    # runs

    def get_options(self) -> RunOptions:
        with self._lock:
            return self._options

    def list_proxies(self) -> List[ProxyEntry]:
        with self._lock:
            return list(self._proxies)

    def get_run(self, run_id: int) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def find_previous_run(self, run_id: int) -> Optional[Run]:
        with self._lock:
            ids = [i for i in self._runs if run_id == 0 or i < run_id]
            return self._runs[max(ids)] if ids else None

    def find_runs_by_day(self, day: date) -> List[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.day == day]
        return sorted(runs, key=lambda r: r.id, reverse=True)

    def update_run_progress(self, run: Run) -> None:
        self._save_run(run)

    def update_run_captchas(self, run: Run) -> None:
        self._save_run(run)

    def update_run(self, run: Run) -> None:
        self._save_run(run)

    def _save_run(self, run: Run) -> None:
        if not run.is_persisted:
            return
        with self._lock:
            self._runs[run.id] = run

    # searches and targets

    def list_searches(self) -> List[Search]:
        with self._lock:
            return list(self._searches.values())

    def list_unchecked_searches(self, run_id: int) -> List[Search]:
        with self._lock:
            return [s for s in self._searches.values() if (run_id, s.id) not in self._serps]

    def count_searches_by_group(self) -> Dict[int, int]:
        counts: Counter = Counter()
        with self._lock:
            for search in self._searches.values():
                counts.update(set(search.group_ids))
        return dict(counts)

    def list_targets(self) -> List[Target]:
        with self._lock:
            return list(self._targets.values())

    # results

    def insert_serp(self, serp: SerpSnapshot) -> None:
        with self._lock:
            self._serps[(serp.run_id, serp.search_id)] = serp

    def get_serp(self, run_id: int, search_id: int) -> Optional[SerpSnapshot]:
        with self._lock:
            return self._serps.get((run_id, search_id))

    def insert_rank(self, rank: RankRecord) -> None:
        key = (rank.run_id, rank.group_id, rank.target_id, rank.search_id)
        with self._lock:
            # ad-hoc runs (id 0) are rechecked in place
            if key in self._ranks and rank.run_id != 0:
                raise ValueError(f"rank already stored for run/group/target/search {key}")
            self._ranks[key] = rank

    def get_rank(self, run_id: int, group_id: int, target_id: int, search_id: int) -> int:
        with self._lock:
            record = self._ranks.get((run_id, group_id, target_id, search_id))
        return record.rank if record else UNRANKED

    def list_ranks(self, run_id: int) -> List[RankRecord]:
        with self._lock:
            return [r for key, r in self._ranks.items() if key[0] == run_id]

    def get_best(self, group_id: int, target_id: int, search_id: int) -> BestRank:
        with self._lock:
            best = self._bests.get((group_id, target_id, search_id))
        if best is None:
            return BestRank(group_id, target_id, search_id, UNRANKED, None, None)
        return best

    def insert_best(self, best: BestRank) -> None:
        with self._lock:
            self._bests[(best.group_id, best.target_id, best.search_id)] = best

    def insert_summaries(self, summaries: Iterable[TargetSummary]) -> None:
        with self._lock:
            for summary in summaries:
                self._summaries[(summary.run_id, summary.target_id)] = summary

    def list_summaries(self, run_id: int) -> List[TargetSummary]:
        with self._lock:
            return [s for key, s in self._summaries.items() if key[0] == run_id]

    def previous_scores(self, run_id: int) -> Dict[int, int]:
        return {s.target_id: s.score_bp for s in self.list_summaries(run_id)}


class JsonlRankStore(MemoryRankStore):
    """MemoryRankStore that also appends every persisted record to a JSON Lines
    file, written by a background thread."""

    def __init__(self, path: str, options: Optional[RunOptions] = None) -> None:
        super().__init__(options)
        self._path = path
        self._queue: queue.Queue[Optional[Dict[str, Any]]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, name="jsonl-writer", daemon=True)
        self._thread.start()

    def update_run_progress(self, run: Run) -> None:
        super().update_run_progress(run)
        self._emit("run_progress", {"id": run.id, "progress": run.progress})

    def update_run_captchas(self, run: Run) -> None:
        super().update_run_captchas(run)
        self._emit("run_captchas", {"id": run.id, "captchas": run.captchas})

    def update_run(self, run: Run) -> None:
        super().update_run(run)
        self._emit("run", to_record(run))

    def insert_serp(self, serp: SerpSnapshot) -> None:
        super().insert_serp(serp)
        self._emit("serp", to_record(serp))

    def insert_rank(self, rank: RankRecord) -> None:
        super().insert_rank(rank)
        self._emit("rank", to_record(rank))

    def insert_best(self, best: BestRank) -> None:
        super().insert_best(best)
        self._emit("best", to_record(best))

    def insert_summaries(self, summaries: Iterable[TargetSummary]) -> None:
        summaries = list(summaries)
        super().insert_summaries(summaries)
        for summary in summaries:
            self._emit("summary", to_record(summary))

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _emit(self, kind: str, record: Dict[str, Any]) -> None:
        self._queue.put({"timestamp": time.time(), "kind": kind, "record": record})

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                f.write(json.dumps(item, ensure_ascii=False) + "\n")
                f.flush()


def to_record(value: Any) -> Any:
    """Convert models into JSON-ready values. Locks and other private state are dropped."""
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_record(getattr(value, f.name))
            for f in fields(value)
            if f.compare
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_record(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_record(v) for v in value]
    return value
