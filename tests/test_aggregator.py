"""Tests for rank computation and the ResultAggregator."""

import unittest
from datetime import date, datetime

from serprank.aggregator import ResultAggregator, compute_rank, should_update_best
from serprank.models import (
    UNRANKED,
    BestRank,
    PatternType,
    RankRecord,
    Run,
    SerpEntry,
    SerpSnapshot,
    Search,
    Target,
)
from serprank.storage import MemoryRankStore
from serprank.summary import SummaryAccumulator

STARTED = datetime(2026, 10, 17, 8, 0)


def _regex_target(target_id=1, group_id=1, pattern=r"example\.com/page") -> Target:
    return Target(id=target_id, group_id=group_id, name="t", pattern=pattern, pattern_type=PatternType.REGEX)


class TestComputeRank(unittest.TestCase):
    """Verify the first-match rank rule."""

    def test_first_matching_url_gives_one_based_rank(self):
        """The documented scenario: match at index 1 is rank 2."""
        rank, url = compute_rank(_regex_target(), ["a.com", "example.com/page", "b.com"])
        self.assertEqual(rank, 2)
        self.assertEqual(url, "example.com/page")

    def test_only_first_match_counts(self):
        """Only the first matching URL should set the rank."""
        urls = ["example.com/page/1", "a.com", "example.com/page/2"]
        self.assertEqual(compute_rank(_regex_target(), urls), (1, "example.com/page/1"))

    def test_no_match_is_unranked(self):
        """A target matching no URL should be UNRANKED."""
        self.assertEqual(compute_rank(_regex_target(), ["a.com", "b.com"]), (UNRANKED, None))

    def test_empty_results_are_unranked(self):
        """An empty result list should leave every target UNRANKED."""
        self.assertEqual(compute_rank(_regex_target(), []), (UNRANKED, None))


class TestShouldUpdateBest(unittest.TestCase):
    """BestRank updates iff rank is ranked and <= current best."""

    def test_strict_improvement(self):
        """A better rank should replace the best rank."""
        self.assertTrue(should_update_best(3, 4))

    def test_tie_updates(self):
        """An equal rank should also replace the best rank."""
        self.assertTrue(should_update_best(4, 4))

    def test_worse_does_not_update(self):
        """A worse rank should keep the stored best rank."""
        self.assertFalse(should_update_best(5, 4))

    def test_unranked_never_updates(self):
        """UNRANKED should never become a best rank."""
        self.assertFalse(should_update_best(UNRANKED, UNRANKED))

    def test_first_rank_beats_missing_best(self):
        """Any real rank should beat a missing best rank."""
        self.assertTrue(should_update_best(80, UNRANKED))


class TestResultAggregator(unittest.TestCase):
    """Verify the per-search aggregation steps."""

    def setUp(self):
        self.store = MemoryRankStore()
        self.previous = self.store.add_run(Run(id=1, day=date(2026, 10, 16), started=datetime(2026, 10, 16)))
        self.run = self.store.add_run(Run(id=2, day=date(2026, 10, 17), started=STARTED))
        self.search = Search(id=10, keyword="kw", group_ids=(1,))
        self.target = _regex_target()
        self.summaries = SummaryAccumulator(self.run.id)
        self.summaries.track(self.target)

    def _aggregator(self, previous_run=None, by_day=None, on_rank=None) -> ResultAggregator:
        return ResultAggregator(
            store=self.store,
            run=self.run,
            targets_by_group={1: [self.target]},
            summaries=self.summaries,
            previous_run=previous_run,
            previous_runs_by_day=by_day,
            on_rank=on_rank,
        )

    def test_previous_rank_and_best_scenario(self):
        """previous=5, new=3, best=4 -> record carries 5/3 and best becomes 3."""
        self.store.insert_rank(RankRecord(1, 1, 1, 10, rank=5, previous_rank=UNRANKED, url="x"))
        self.store.insert_best(BestRank(1, 1, 10, 4, datetime(2026, 1, 1), "old"))

        urls = ["a.com", "b.com", "example.com/page"]
        records = self._aggregator(previous_run=self.previous).process(self.search, urls)

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].previous_rank, 5)
        self.assertEqual(records[0].rank, 3)
        self.assertEqual(self.store.get_rank(2, 1, 1, 10), 3)
        best = self.store.get_best(1, 1, 10)
        self.assertEqual(best.rank, 3)
        self.assertEqual(best.run_day, STARTED)
        self.assertEqual(best.url, "example.com/page")

    def test_worse_rank_keeps_best(self):
        """A worse rank in this run should leave the stored best untouched."""
        self.store.insert_best(BestRank(1, 1, 10, 1, datetime(2026, 1, 1), "old"))
        self._aggregator().process(self.search, ["a.com", "example.com/page"])
        self.assertEqual(self.store.get_best(1, 1, 10).url, "old")

    def test_tie_refreshes_best_url_and_timestamp(self):
        """A tie should refresh the best url and run timestamp."""
        self.store.insert_best(BestRank(1, 1, 10, 2, datetime(2026, 1, 1), "old"))
        self._aggregator().process(self.search, ["a.com", "example.com/page"])
        best = self.store.get_best(1, 1, 10)
        self.assertEqual(best.rank, 2)
        self.assertEqual(best.url, "example.com/page")
        self.assertEqual(best.run_day, STARTED)

    def test_unranked_without_previous_run(self):
        """Without a previous run the previous rank should be UNRANKED."""
        records = self._aggregator().process(self.search, ["a.com"])
        self.assertEqual(records[0].rank, UNRANKED)
        self.assertEqual(records[0].previous_rank, UNRANKED)
        self.assertIsNone(records[0].url)
        self.assertEqual(self.store.get_best(1, 1, 10).rank, UNRANKED)

    def test_snapshot_is_persisted_with_history(self):
        """Entries found in older snapshots carry their old positions per day offset."""
        self.store.insert_serp(SerpSnapshot(
            run_id=1, search_id=10, timestamp=datetime(2026, 10, 16),
            entries=(SerpEntry("b.com"), SerpEntry("a.com")),
        ))
        self._aggregator(by_day={1: 1, 7: 99}).process(self.search, ["a.com", "c.com"])

        serp = self.store.get_serp(2, 10)
        self.assertIsNotNone(serp)
        self.assertEqual([e.url for e in serp.entries], ["a.com", "c.com"])
        self.assertEqual(serp.entries[0].history, {1: 2})
        self.assertEqual(serp.entries[1].history, {})
        self.assertEqual(serp.timestamp, STARTED)

    def test_feeds_summary_and_callback(self):
        """Each rank should reach the target summary and the on_rank callback."""
        seen = []
        self._aggregator(on_rank=seen.append).process(self.search, ["example.com/page"])
        self.assertEqual(len(seen), 1)
        summary = self.summaries.get(1)
        self.assertEqual(summary.total_top3, 1)
        self.assertEqual(summary.score_raw, 100)

    def test_groups_without_targets_are_skipped(self):
        """Groups with no targets should produce no rank records."""
        search = Search(id=11, keyword="kw2", group_ids=(1, 2))
        records = self._aggregator().process(search, ["example.com/page"])
        self.assertEqual([r.group_id for r in records], [1])

    def test_search_in_several_groups_ranks_each(self):
        """A search shared by groups should be ranked once per group."""
        other = _regex_target(target_id=2, group_id=2)
        self.summaries.track(other)
        aggregator = ResultAggregator(
            store=self.store,
            run=self.run,
            targets_by_group={1: [self.target], 2: [other]},
            summaries=self.summaries,
        )
        search = Search(id=12, keyword="kw3", group_ids=(1, 2))
        records = aggregator.process(search, ["example.com/page"])
        self.assertEqual(sorted((r.group_id, r.target_id) for r in records), [(1, 1), (2, 2)])


if __name__ == "__main__":
    unittest.main()
