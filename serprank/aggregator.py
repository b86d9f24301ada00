from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import UNRANKED, BestRank, RankRecord, Run, SerpEntry, SerpSnapshot, Search, Target
from .storage import RankStore
from .summary import SummaryAccumulator

logger = logging.getLogger(__name__)


def compute_rank(target: Target, urls: Sequence[str]) -> Tuple[int, Optional[str]]:
    """1-based position of the first URL target matches, else (UNRANKED, None)."""
    for i, url in enumerate(urls, start=1):
        if target.match(url):
            return i, url
    return UNRANKED, None


def should_update_best(rank: int, best: int) -> bool:
    # ties refresh the stored url and timestamp
    return rank != UNRANKED and rank <= best


class ResultAggregator:
    """Turns one completed search into a snapshot, rank records, best-rank
    updates and summary contributions.

    Called concurrently by every worker. The lookups it reads are built
    before dispatch and never mutated afterwards; the only shared mutable
    state it touches is the summary of each target, which locks itself."""

    def __init__(
        self,
        store: RankStore,
        run: Run,
        targets_by_group: Mapping[int, List[Target]],
        summaries: SummaryAccumulator,
        previous_run: Optional[Run] = None,
        previous_runs_by_day: Optional[Mapping[int, int]] = None,
        on_rank: Optional[Callable[[RankRecord], None]] = None,
    ) -> None:
        self._store = store
        self._run = run
        self._targets_by_group = targets_by_group
        self._summaries = summaries
        self._previous_run = previous_run
        self._previous_runs_by_day = dict(previous_runs_by_day or {})
        self._on_rank = on_rank

    def process(self, search: Search, urls: Sequence[str]) -> List[RankRecord]:
        self._store.insert_serp(self.build_snapshot(search, urls))

        records: List[RankRecord] = []
        for group_id in search.group_ids:
            targets = self._targets_by_group.get(group_id)
            if not targets:
                continue
            for target in targets:
                records.append(self._rank_target(group_id, target, search, urls))

        logger.debug("search %d (%s): %d urls, %d ranks", search.id, search.keyword, len(urls), len(records))
        return records

    def build_snapshot(self, search: Search, urls: Sequence[str]) -> SerpSnapshot:
        history = self.history(search)
        entries = []
        for url in urls:
            positions: Dict[int, int] = {}
            for day, serp in history.items():
                position = serp.position_of(url)
                if position is not None:
                    positions[day] = position
            entries.append(SerpEntry(url=url, history=positions))
        return SerpSnapshot(
            run_id=self._run.id,
            search_id=search.id,
            timestamp=self._run.started,
            entries=tuple(entries),
        )

    def history(self, search: Search) -> Dict[int, SerpSnapshot]:
        """Snapshots of search in the runs 1/7/30/90 days back, where they exist."""
        history: Dict[int, SerpSnapshot] = {}
        for day, run_id in self._previous_runs_by_day.items():
            serp = self._store.get_serp(run_id, search.id)
            if serp is not None:
                history[day] = serp
        return history

    def _rank_target(self, group_id: int, target: Target, search: Search, urls: Sequence[str]) -> RankRecord:
        rank, url = compute_rank(target, urls)

        previous_rank = UNRANKED
        if self._previous_run is not None:
            previous_rank = self._store.get_rank(self._previous_run.id, group_id, target.id, search.id)

        record = RankRecord(
            run_id=self._run.id,
            group_id=group_id,
            target_id=target.id,
            search_id=search.id,
            rank=rank,
            previous_rank=previous_rank,
            url=url,
        )
        self._store.insert_rank(record)
        if self._on_rank is not None:
            self._on_rank(record)
        self._summaries.add(record)

        best = self._store.get_best(group_id, target.id, search.id)
        if should_update_best(rank, best.rank):
            self._store.insert_best(
                BestRank(group_id, target.id, search.id, rank, self._run.started, url)
            )
        return record
