from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .models import RankRecord, Target, TargetSummary
from .storage import RankStore

logger = logging.getLogger(__name__)


class SummaryAccumulator:
    """Per-target running totals for one run.

    The target id -> summary map is filled before workers start and only
    read afterwards; each summary carries its own lock, so workers
    aggregating different targets never contend."""

    def __init__(self, run_id: int) -> None:
        self._run_id = run_id
        self._summaries: Dict[int, TargetSummary] = {}

    def track(self, target: Target, previous_score_bp: int = 0) -> TargetSummary:
        summary = TargetSummary(
            group_id=target.group_id,
            target_id=target.id,
            run_id=self._run_id,
            previous_score_bp=previous_score_bp,
        )
        self._summaries[target.id] = summary
        return summary

    def restore(self, summaries: Iterable[TargetSummary]) -> None:
        """Replace fresh entries with summaries already stored for a resumed run."""
        for summary in summaries:
            self._summaries[summary.target_id] = summary

    def get(self, target_id: int) -> Optional[TargetSummary]:
        return self._summaries.get(target_id)

    def add(self, record: RankRecord) -> None:
        summary = self._summaries.get(record.target_id)
        if summary is None:
            logger.warning("rank for untracked target %d dropped from summaries", record.target_id)
            return
        summary.add_rank_candidate(record)

    def finalize(self, search_count_by_group: Mapping[int, int], store: RankStore) -> List[TargetSummary]:
        """Compute every score and persist all summaries together. Single-threaded."""
        summaries = list(self._summaries.values())
        for summary in summaries:
            summary.compute_score_bp(search_count_by_group.get(summary.group_id, 0))
        store.insert_summaries(summaries)
        return summaries

    def __len__(self) -> int:
        return len(self._summaries)

    def __contains__(self, target_id: int) -> bool:
        return target_id in self._summaries
