"""
tests/test_fetching.py
LogFetcher: windows, retries, bisection on RangeTooLarge, timestamp enrichment.
"""

import asyncio

import pytest

from nftledger.application import fetching
from nftledger.application.fetching import LogFetcher
from nftledger.application.planning import merge_intervals
from nftledger.config import FetchConfig
from nftledger.domain.decoding import topics_for
from nftledger.domain.errors import RateLimitedError, TransientRPCError
from nftledger.domain.models import BlockRange

from conftest import ALICE, BOB, CONTRACT, GENESIS_TS, ZERO, FakeRPC, log_721

T721 = topics_for("ERC721")


@pytest.fixture
def sleeps(monkeypatch):
    """Record non-zero sleeps without waiting."""
    real_sleep = asyncio.sleep
    seen: list[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        if delay:
            seen.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(fetching.asyncio, "sleep", fake_sleep)
    return seen


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------

class TestWindows:
    @pytest.mark.asyncio
    async def test_fetch_plans_chunks_and_sorts(self, fast_config):
        logs = [log_721(ZERO, ALICE, i, b) for i, b in enumerate([450, 5, 120, 299])]
        rpc = FakeRPC(logs)
        res = await LogFetcher(rpc, fast_config).fetch(CONTRACT, T721, BlockRange(0, 499))
        assert [l.block_number for l in res.logs] == [5, 120, 299, 450]
        assert res.resolved == [BlockRange(s, s + 99) for s in range(0, 500, 100)]
        assert res.unresolved == []
        assert sorted(rpc.calls) == [(s, s + 99) for s in range(0, 500, 100)]

    @pytest.mark.asyncio
    async def test_concurrency_bounded_and_delay_between_windows(self, sleeps):
        cfg = FetchConfig(max_chunk=10, concurrency=2, batch_delay=0.5)
        rpc = FakeRPC([], latest=49)
        await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(0, 49))
        assert len(rpc.calls) == 5
        assert rpc.max_in_flight <= 2
        assert sleeps == [0.5, 0.5]


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------

class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_then_success(self, fast_config):
        rpc = FakeRPC([log_721(ZERO, ALICE, 1, 10)])
        rpc.fail(0, 99, TransientRPCError("connection reset"))
        res = await LogFetcher(rpc, fast_config).fetch(CONTRACT, T721, BlockRange(0, 99))
        assert len(res.logs) == 1
        assert rpc.calls == [(0, 99), (0, 99)]

    @pytest.mark.asyncio
    async def test_exponential_backoff_capped(self, sleeps):
        cfg = FetchConfig(max_chunk=100, max_attempts=4, backoff_base=1.0, backoff_max=3.0)
        rpc = FakeRPC([], latest=99)
        rpc.fail(0, 99, *(TransientRPCError("busy") for _ in range(3)))
        res = await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(0, 99))
        assert res.resolved == [BlockRange(0, 99)]
        assert sleeps == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_rate_limit_uses_longer_delay(self, sleeps):
        cfg = FetchConfig(max_chunk=100, rate_limit_delay=5.0)
        rpc = FakeRPC([], latest=99)
        rpc.fail(0, 99, RateLimitedError("429"), RateLimitedError("429", retry_after=7.0))
        await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(0, 99))
        assert sleeps == [5.0, 7.0]

    @pytest.mark.asyncio
    async def test_exhaustion_is_reported_not_dropped(self, fast_config):
        rpc = FakeRPC([log_721(ZERO, ALICE, 1, 150)], latest=299)
        rpc.fail(100, 199, *(TransientRPCError("timeout") for _ in range(3)))
        res = await LogFetcher(rpc, fast_config).fetch(CONTRACT, T721, BlockRange(0, 299))
        assert res.resolved == [BlockRange(0, 99), BlockRange(200, 299)]
        [u] = res.unresolved
        assert u.range == BlockRange(100, 199)
        assert u.reason == "retries_exhausted"
        assert u.attempts == 3
        assert res.logs == []


# ---------------------------------------------------------------------------
# Bisection
# ---------------------------------------------------------------------------

class TestBisection:
    @pytest.mark.asyncio
    async def test_forced_split_still_covers_parent(self):
        cfg = FetchConfig(max_chunk=1000, batch_delay=0.0)
        logs = [log_721(ZERO, ALICE, i, b) for i, b in enumerate([1010, 1020, 1600, 1900])]
        rpc = FakeRPC(logs, latest=2999)
        rpc.max_results = 1
        res = await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(1000, 2999))
        assert res.splits > 0
        assert res.unresolved == []
        assert len(res.logs) == 4
        spans = [(r.start, r.end) for r in res.resolved]
        assert merge_intervals(spans) == [(1000, 2999)]
        assert sum(r.span() for r in res.resolved) == 2000

    @pytest.mark.asyncio
    async def test_left_half_first(self):
        cfg = FetchConfig(max_chunk=100, batch_delay=0.0)
        rpc = FakeRPC([], latest=99)
        rpc.fail(0, 99, fetching.RangeTooLargeError("response size exceeded"))
        await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(0, 99))
        assert rpc.calls == [(0, 99), (0, 49), (50, 99)]

    @pytest.mark.asyncio
    async def test_unsplittable_block_is_unresolved(self):
        cfg = FetchConfig(max_chunk=16, batch_delay=0.0)
        logs = [log_721(ZERO, ALICE, 1, 5, log_index=0), log_721(ZERO, BOB, 2, 5, log_index=1)]
        rpc = FakeRPC(logs, latest=15)
        rpc.max_results = 1
        res = await LogFetcher(rpc, cfg).fetch(CONTRACT, T721, BlockRange(0, 15))
        [u] = res.unresolved
        assert u.range == BlockRange(5, 5)
        assert u.reason == "range_too_large"
        covered = merge_intervals([(r.start, r.end) for r in res.resolved] + [(5, 5)])
        assert covered == [(0, 15)]


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:
    @pytest.mark.asyncio
    async def test_distinct_blocks_looked_up_once(self, fast_config):
        rpc = FakeRPC()
        logs = [log_721(ZERO, ALICE, 1, 10), log_721(ZERO, BOB, 2, 10, log_index=1),
                log_721(ZERO, BOB, 3, 11, ts=42)]
        out = await LogFetcher(rpc, fast_config).enrich(logs)
        assert rpc.block_calls == [10]
        assert [(l.block_timestamp, fb) for l, fb in out] == [
            (GENESIS_TS + 120, False), (GENESIS_TS + 120, False), (42, False),
        ]

    @pytest.mark.asyncio
    async def test_wall_clock_fallback(self, fast_config):
        rpc = FakeRPC()
        rpc.block_failures.add(10)
        fetcher = LogFetcher(rpc, fast_config, clock=lambda: 1_700_000_000.5)
        ts = await fetcher.block_timestamps([10, 11])
        assert ts[10] == (1_700_000_000, True)
        assert ts[11] == (GENESIS_TS + 132, False)
        assert rpc.block_calls.count(10) == fast_config.max_attempts
