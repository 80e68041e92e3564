from __future__ import annotations
from typing import Iterable
from ..domain.models import BlockRange, Gap

def plan_ranges(start_block: int, end_block: int, step: int) -> list[BlockRange]:
    """Ordered, disjoint sub-ranges of at most `step` blocks covering [start_block, end_block]."""
    if step < 1:
        raise ValueError(f"step must be >= 1, got {step}")
    out: list[BlockRange] = []
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + step - 1)
        out.append(BlockRange(fb, tb))
        b = tb + 1
    return out

def bisect_range(r: BlockRange) -> tuple[BlockRange, BlockRange]:
    if r.span() < 2:
        raise ValueError(f"cannot bisect single-block range {r}")
    mid = (r.start + r.end) // 2
    return BlockRange(r.start, mid), BlockRange(mid + 1, r.end)

def merge_intervals(intervals: list[tuple[int,int]]) -> list[tuple[int,int]]:
    if not intervals: return []
    intervals = sorted(intervals)
    merged: list[list[int]] = [[intervals[0][0], intervals[0][1]]]
    for s, e in intervals[1:]:
        ms, me = merged[-1]
        if s <= me + 1: merged[-1][1] = max(me, e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]


def contiguous_frontier(start: int, done: Iterable[BlockRange]) -> int | None:
    """Highest block B such that [start, B] is fully covered by `done`, or None."""
    merged = merge_intervals([(r.start, r.end) for r in done])
    if not merged or merged[0][0] > start:
        return None
    return merged[0][1]

def find_gaps(blocks: Iterable[int], *, start: int | None = None, end: int | None = None,
              min_gap: int = 1) -> list[Gap]:
    """
    Holes between consecutive distinct block numbers.

    Every place where the next distinct block is not exactly one greater than
    the previous yields the inclusive span between them. With `start`/`end`,
    a leading hole [start, first-1] and trailing hole [last+1, end] are also
    reported. Gaps shorter than `min_gap` blocks are ignored.
    """
    out: list[Gap] = []

    def emit(s: int, e: int) -> None:
        if e >= s and e - s + 1 >= min_gap:
            out.append(Gap(s, e, e - s + 1))

    prev: int | None = None
    for b in sorted(set(blocks)):
        if prev is None:
            if start is not None and b > start:
                emit(start, b - 1)
        elif b - prev > 1:
            emit(prev + 1, b - 1)
        prev = b
    if prev is None:
        if start is not None and end is not None:
            emit(start, end)
    elif end is not None and end > prev:
        emit(prev + 1, end)
    return out
