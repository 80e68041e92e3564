"""
tests/test_planning.py
Range planning, bisection, interval arithmetic and gap detection.
"""

import pytest

from nftledger.application.planning import (
    bisect_range,
    contiguous_frontier,
    find_gaps,
    merge_intervals,
    plan_ranges,
)
from nftledger.domain.models import BlockRange, Gap


# ---------------------------------------------------------------------------
# plan_ranges / bisect_range
# ---------------------------------------------------------------------------

class TestPlanRanges:
    def test_exact_partition(self):
        assert plan_ranges(1000, 2999, 1000) == [BlockRange(1000, 1999), BlockRange(2000, 2999)]

    def test_last_range_is_short(self):
        rs = plan_ranges(0, 2500, 1000)
        assert rs[-1] == BlockRange(2000, 2500)
        assert sum(r.span() for r in rs) == 2501

    def test_ranges_are_disjoint_and_contiguous(self):
        rs = plan_ranges(17, 9_999, 333)
        assert rs[0].start == 17 and rs[-1].end == 9_999
        for a, b in zip(rs, rs[1:]):
            assert b.start == a.end + 1
        assert all(r.span() <= 333 for r in rs)

    def test_single_block(self):
        assert plan_ranges(5, 5, 2000) == [BlockRange(5, 5)]

    def test_empty_when_start_after_end(self):
        assert plan_ranges(10, 9, 100) == []

    def test_bad_step(self):
        with pytest.raises(ValueError):
            plan_ranges(0, 10, 0)


class TestBisectRange:
    def test_halves_recover_parent(self):
        left, right = bisect_range(BlockRange(1000, 1999))
        assert left == BlockRange(1000, 1499)
        assert right == BlockRange(1500, 1999)

    def test_two_blocks(self):
        assert bisect_range(BlockRange(7, 8)) == (BlockRange(7, 7), BlockRange(8, 8))

    def test_single_block_cannot_split(self):
        with pytest.raises(ValueError):
            bisect_range(BlockRange(7, 7))


# ---------------------------------------------------------------------------
# Interval arithmetic
# ---------------------------------------------------------------------------

class TestIntervals:
    def test_merge_adjacent_and_overlapping(self):
        assert merge_intervals([(10, 20), (0, 9), (15, 30), (40, 41)]) == [(0, 30), (40, 41)]

    def test_frontier_stops_at_first_hole(self):
        done = [BlockRange(0, 99), BlockRange(200, 299), BlockRange(100, 149)]
        assert contiguous_frontier(0, done) == 149

    def test_frontier_none_without_start(self):
        assert contiguous_frontier(0, [BlockRange(1, 10)]) is None
        assert contiguous_frontier(0, []) is None


# ---------------------------------------------------------------------------
# find_gaps
# ---------------------------------------------------------------------------

class TestFindGaps:
    def test_interior_gaps(self):
        assert find_gaps([100, 101, 105, 106, 110]) == [Gap(102, 104, 3), Gap(107, 109, 3)]

    def test_duplicates_and_order_ignored(self):
        assert find_gaps([5, 3, 3, 4, 9]) == [Gap(6, 8, 3)]

    def test_no_gaps_when_contiguous(self):
        assert find_gaps(range(100, 200)) == []

    def test_leading_and_trailing_holes(self):
        gaps = find_gaps([50, 51], start=40, end=60)
        assert gaps == [Gap(40, 49, 10), Gap(52, 60, 9)]

    def test_empty_ledger_with_bounds_is_one_gap(self):
        assert find_gaps([], start=0, end=9) == [Gap(0, 9, 10)]
        assert find_gaps([]) == []

    def test_min_gap_threshold(self):
        assert find_gaps([1, 3, 200], min_gap=100) == [Gap(4, 199, 196)]
