from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Awaitable, Callable, Iterable, Sequence, TypeVar

import structlog

from ..config import FetchConfig
from ..domain.errors import RangeTooLargeError, RateLimitedError, RPCError, TransientRPCError
from ..domain.models import BlockRange, RawLog, UnresolvedRange
from ..domain.value_types import Address
from ..ports.rpc import RPCClient
from .planning import bisect_range, plan_ranges

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class FetchResult:
    logs: list[RawLog] = field(default_factory=list)
    resolved: list[BlockRange] = field(default_factory=list)
    unresolved: list[UnresolvedRange] = field(default_factory=list)
    splits: int = 0

    def merge(self, other: "FetchResult") -> None:
        self.logs.extend(other.logs)
        self.resolved.extend(other.resolved)
        self.unresolved.extend(other.unresolved)
        self.splits += other.splits

    def sort(self) -> "FetchResult":
        self.logs.sort(key=lambda l: (l.block_number, l.log_index))
        self.resolved.sort()
        self.unresolved.sort(key=lambda u: u.range)
        return self


class LogFetcher:
    """
    Chunked eth_getLogs with a fixed concurrency window, inter-window pause,
    bounded retries and bisection of ranges the provider rejects as too large.
    """

    def __init__(self, rpc: RPCClient, config: FetchConfig | None = None, *,
                 clock: Callable[[], float] = time.time) -> None:
        self.rpc = rpc
        self.config = config or FetchConfig()
        self._clock = clock

    # ──────────────────────────────
    # retry policy
    # ──────────────────────────────

    async def _call(self, what: str, fn: Callable[..., Awaitable[T]], *args) -> T:
        cfg = self.config
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn(*args)
            except RangeTooLargeError:
                raise
            except RateLimitedError as e:
                if attempt >= cfg.max_attempts:
                    raise
                delay = max(cfg.rate_limit_delay, e.retry_after or 0.0)
                err = str(e)
            except TransientRPCError as e:
                if attempt >= cfg.max_attempts:
                    raise
                delay = min(cfg.backoff_max, cfg.backoff_base * (2 ** (attempt - 1)))
                err = str(e)
            log.warning("fetch.retry", call=what, args=args, attempt=attempt, delay=delay, error=err)
            await asyncio.sleep(delay)

    # ──────────────────────────────
    # logs
    # ──────────────────────────────

    async def _fetch_range(self, address: Address, topics: Sequence[str], r: BlockRange) -> FetchResult:
        out = FetchResult()
        stack: list[BlockRange] = [r]
        while stack:
            cur = stack.pop()
            try:
                logs = await self._call("eth_getLogs", self.rpc.get_logs, address, list(topics), cur.start, cur.end)
            except RangeTooLargeError as e:
                if cur.span() > self.config.min_split_span:
                    left, right = bisect_range(cur)
                    log.info("fetch.bisect", range=str(cur), left=str(left), right=str(right))
                    stack.append(right)
                    stack.append(left)      # left half runs first
                    out.splits += 1
                else:
                    log.error("fetch.too_large_unsplittable", range=str(cur), error=str(e))
                    out.unresolved.append(UnresolvedRange(cur, "range_too_large", str(e), 1))
                continue
            except RPCError as e:
                log.error("fetch.exhausted", range=str(cur), attempts=self.config.max_attempts, error=str(e))
                out.unresolved.append(UnresolvedRange(cur, "retries_exhausted", str(e), self.config.max_attempts))
                continue
            out.logs.extend(logs)
            out.resolved.append(cur)
        return out

    async def iter_windows(self, address: Address, topics: Sequence[str],
                           ranges: Sequence[BlockRange]) -> AsyncIterator[tuple[list[BlockRange], FetchResult]]:
        """Yield (window, result) per concurrency window; sleeps batch_delay before the next one."""
        n = self.config.concurrency
        for i in range(0, len(ranges), n):
            if i:
                await asyncio.sleep(self.config.batch_delay)
            window = list(ranges[i:i+n])
            parts = await asyncio.gather(*(self._fetch_range(address, topics, r) for r in window))
            res = FetchResult()
            for p in parts:
                res.merge(p)
            yield window, res.sort()

    async def fetch_many(self, address: Address, topics: Sequence[str], ranges: Sequence[BlockRange]) -> FetchResult:
        total = FetchResult()
        async for _, res in self.iter_windows(address, topics, ranges):
            total.merge(res)
        return total.sort()

    async def fetch(self, address: Address, topics: Sequence[str], r: BlockRange) -> FetchResult:
        """All logs for `r`, planned into max_chunk sub-ranges."""
        return await self.fetch_many(address, topics, plan_ranges(r.start, r.end, self.config.max_chunk))

    # ──────────────────────────────
    # block numbers / timestamps
    # ──────────────────────────────

    async def latest_block(self) -> int:
        return await self._call("eth_blockNumber", self.rpc.latest_block)

    async def _timestamp(self, number: int) -> tuple[int, bool]:
        try:
            header = await self._call("eth_getBlockByNumber", self.rpc.get_block, number)
            return header.timestamp, False
        except RPCError as e:
            now = int(self._clock())
            log.warning("timestamps.fallback", block=number, timestamp=now, error=str(e))
            return now, True

    async def block_timestamps(self, blocks: Iterable[int]) -> dict[int, tuple[int, bool]]:
        """block -> (timestamp, is_fallback); same windowed pattern as log fetching."""
        todo = sorted(set(blocks))
        out: dict[int, tuple[int, bool]] = {}
        n = self.config.concurrency
        for i in range(0, len(todo), n):
            if i:
                await asyncio.sleep(self.config.batch_delay)
            window = todo[i:i+n]
            out.update(zip(window, await asyncio.gather(*(self._timestamp(b) for b in window))))
        return out

    async def enrich(self, logs: Sequence[RawLog]) -> list[tuple[RawLog, bool]]:
        """Attach block timestamps to logs the provider returned without one."""
        need = {l.block_number for l in logs if l.block_timestamp is None}
        ts = await self.block_timestamps(need) if need else {}
        out: list[tuple[RawLog, bool]] = []
        for l in logs:
            if l.block_timestamp is not None:
                out.append((l, False))
                continue
            t, fallback = ts[l.block_number]
            out.append((replace(l, block_timestamp=t), fallback))
        return out
