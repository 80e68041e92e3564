from __future__ import annotations

import asyncio
import time
from typing import Literal, Sequence

import structlog

from ..config import FetchConfig
from ..domain.decoding import normalize, topics_for
from ..domain.errors import LogDecodeError
from ..domain.models import (
    AuditReport, BlockRange, ChunkRec, Gap, RawLog, RebuildResult, SyncProgress, SyncReport,
    TransferEvent, UnresolvedRange,
)
from ..domain.value_types import Address, ContractKind, RunStatus
from ..ports.rpc import RPCClient
from ..ports.storage import LedgerStore, ManifestSink, ProgressListener
from .fetching import FetchResult, LogFetcher
from .planning import contiguous_frontier, find_gaps as detect_gaps, merge_intervals, plan_ranges
from .rebuild import rebuild_state

log = structlog.get_logger(__name__)

# interior holes smaller than this are taken as quiet blocks, not missed ranges
GAP_THRESHOLD_BLOCKS = 100


def _in(r: BlockRange, block: int) -> bool: return r.start <= block <= r.end


def _decode(raw: Sequence[tuple[RawLog, bool]], kind: ContractKind) -> tuple[list[TransferEvent], int]:
    events: list[TransferEvent] = []
    bad = 0
    for l, fallback in raw:
        try:
            events.extend(normalize(l, kind, timestamp_fallback=fallback))
        except LogDecodeError as e:
            bad += 1
            log.warning("sync.undecodable_log", tx=l.tx_hash, log_index=l.log_index, block=l.block_number, error=str(e))
    return events, bad


async def _record_chunks(manifest: ManifestSink, res: FetchResult, events: Sequence[TransferEvent]) -> None:
    now = time.time()
    for r in res.resolved:
        await manifest.append(ChunkRec(
            from_block=r.start, to_block=r.end, status="done", attempts=1,
            logs=sum(1 for l in res.logs if _in(r, l.block_number)),
            events=sum(1 for e in events if _in(r, e.block_number)),
            updated_at=now,
        ))
    for u in res.unresolved:
        await manifest.append(ChunkRec(
            from_block=u.range.start, to_block=u.range.end, status="failed",
            attempts=u.attempts, error=u.error or u.reason, updated_at=now,
        ))


async def _sync_ranges(
    *,
    rpc: RPCClient,
    store: LedgerStore,
    contract: Address,
    kind: ContractKind,
    ranges: Sequence[BlockRange],
    requested: BlockRange | None,
    config: FetchConfig,
    manifest: ManifestSink | None,
    on_progress: ProgressListener | None,
    stop: asyncio.Event | None,
    checkpoint_from: int | None,
) -> SyncReport:
    """Fetch → normalize → write, window by window, over pre-planned `ranges`."""
    fetcher = LogFetcher(rpc, config)
    topics = topics_for(kind)
    total = sum(r.span() for r in ranges)
    processed = logs_fetched = found = inserted = undecodable = 0
    done: list[BlockRange] = []
    unresolved: list[UnresolvedRange] = []
    consumed = 0
    aborted = bool(stop and stop.is_set())

    async def progress(status: RunStatus, error: str | None = None) -> None:
        p = SyncProgress(contract, processed, total, found, inserted, status, error)
        await store.record_progress(p)
        if on_progress is not None:
            on_progress(p)

    await progress("running")
    try:
        if not aborted:
            async for window, res in fetcher.iter_windows(contract, topics, ranges):
                consumed += len(window)
                logs_fetched += len(res.logs)
                events, bad = _decode(await fetcher.enrich(res.logs), kind)
                undecodable += bad
                # a batch commits in full or not at all; only then do counters and checkpoint move
                inserted += await store.write_events(events)
                found += len(events)
                done.extend(res.resolved)
                unresolved.extend(res.unresolved)
                processed += sum(r.span() for r in res.resolved)
                if manifest is not None:
                    await _record_chunks(manifest, res, events)
                if checkpoint_from is not None:
                    frontier = contiguous_frontier(checkpoint_from, done)
                    if frontier is not None:
                        await store.save_checkpoint(contract, frontier)
                log.debug("sync.window", window=f"{window[0].start}..{window[-1].end}", logs=len(res.logs),
                          events=len(events), splits=res.splits, unresolved=len(res.unresolved))
                await progress("running")
                if stop is not None and stop.is_set() and consumed < len(ranges):
                    aborted = True
                    break
    except Exception as e:
        await progress("failed", str(e))
        raise

    if aborted:
        unresolved.extend(UnresolvedRange(r, "aborted") for r in ranges[consumed:])
        status: RunStatus = "aborted"
    else:
        status = "partial" if unresolved else "completed"
    unresolved.sort(key=lambda u: u.range)
    await progress(status, ", ".join(f"{u.range}:{u.reason}" for u in unresolved) or None)

    report = SyncReport(
        contract_address=contract, contract_kind=kind, requested=requested,
        processed_blocks=processed, total_blocks=total, logs_fetched=logs_fetched,
        events_found=found, events_inserted=inserted, undecodable_logs=undecodable,
        unresolved=tuple(unresolved), status=status,
    )
    log.info("sync.finished", status=status, blocks=f"{processed}/{total}", logs=logs_fetched,
             events=found, inserted=inserted, duplicates=report.duplicates_skipped,
             undecodable=undecodable, unresolved=len(unresolved))
    return report


async def sync_contract(
    *,
    rpc: RPCClient,
    store: LedgerStore,
    contract: Address,
    kind: ContractKind,
    start_block: int | None = None,
    end_block: int | Literal["latest"] = "latest",
    config: FetchConfig | None = None,
    manifest: ManifestSink | None = None,
    on_progress: ProgressListener | None = None,
    stop: asyncio.Event | None = None,
    deployment_block: int = 0,
) -> SyncReport:
    """
    Ingest every transfer of `contract` in [start_block, end_block] into the ledger.

    start_block=None resumes after the stored checkpoint (or from
    deployment_block on a first run). The checkpoint only moves when the run
    starts at or before the resume point, so an explicit later start never
    skips blocks. Sub-ranges that still fail after retries and bisection are
    returned in SyncReport.unresolved; everything else is committed.
    """
    cfg = config or FetchConfig()
    contract = Address(contract.lower())
    topics_for(kind)    # unknown kinds fail before any RPC or store work
    cp = await store.get_checkpoint(contract)
    resume_from = deployment_block if cp is None else cp + 1
    start = resume_from if start_block is None else int(start_block)
    end = await LogFetcher(rpc, cfg).latest_block() if end_block == "latest" else int(end_block)

    with structlog.contextvars.bound_contextvars(contract=contract, kind=kind):
        if start > end:
            log.info("sync.up_to_date", start=start, end=end, checkpoint=cp)
            return SyncReport(contract_address=contract, contract_kind=kind, requested=None)
        requested = BlockRange(start, end)
        ranges = plan_ranges(start, end, cfg.max_chunk)
        log.info("sync.start", range=str(requested), ranges=len(ranges), checkpoint=cp)
        return await _sync_ranges(
            rpc=rpc, store=store, contract=contract, kind=kind, ranges=ranges, requested=requested,
            config=cfg, manifest=manifest, on_progress=on_progress, stop=stop,
            checkpoint_from=start if start <= resume_from else None,
        )


async def sync_contracts(
    *,
    rpc: RPCClient,
    store: LedgerStore,
    targets: Sequence[tuple[Address, ContractKind]],
    **kwargs,
) -> list[SyncReport]:
    """Independent concurrent sync runs sharing only the store."""
    return list(await asyncio.gather(*(
        sync_contract(rpc=rpc, store=store, contract=addr, kind=kind, **kwargs) for addr, kind in targets
    )))


# ──────────────────────────────
# gaps
# ──────────────────────────────

async def find_gaps(store: LedgerStore, contract: Address, *, start: int | None = None, end: int | None = None,
                    min_gap: int = 1) -> list[Gap]:
    """Holes in the ledger's distinct block numbers, optionally bounded to [start, end]."""
    contract = Address(contract.lower())
    blocks = await store.distinct_blocks(contract, start, end)
    gaps = detect_gaps(blocks, start=start, end=end, min_gap=min_gap)
    log.info("gaps.found", contract=contract, blocks=len(blocks), gaps=len(gaps),
             missing_blocks=sum(g.block_count for g in gaps))
    return gaps


async def fill_gaps(
    *,
    rpc: RPCClient,
    store: LedgerStore,
    contract: Address,
    kind: ContractKind,
    gaps: Sequence[Gap],
    config: FetchConfig | None = None,
    manifest: ManifestSink | None = None,
    on_progress: ProgressListener | None = None,
    stop: asyncio.Event | None = None,
) -> SyncReport:
    """Re-run the sync path over each gap; an empty fetch is proof the gap is genuine."""
    cfg = config or FetchConfig()
    contract = Address(contract.lower())
    if not gaps:
        return SyncReport(contract_address=contract, contract_kind=kind, requested=None)
    ranges = [r for g in sorted(gaps, key=lambda g: g.start) for r in plan_ranges(g.start, g.end, cfg.max_chunk)]
    requested = BlockRange(ranges[0].start, ranges[-1].end)
    with structlog.contextvars.bound_contextvars(contract=contract, kind=kind):
        log.info("gaps.fill", gaps=len(gaps), ranges=len(ranges))
        return await _sync_ranges(
            rpc=rpc, store=store, contract=contract, kind=kind, ranges=ranges, requested=requested,
            config=cfg, manifest=manifest, on_progress=on_progress, stop=stop, checkpoint_from=None,
        )


# ──────────────────────────────
# pipeline / audit
# ──────────────────────────────

async def sync_and_rebuild(
    *,
    rpc: RPCClient,
    store: LedgerStore,
    contract: Address,
    kind: ContractKind,
    strict: bool = True,
    **kwargs,
) -> tuple[SyncReport, SyncReport | None, RebuildResult | None]:
    """
    Sync, retry whatever the sync left unresolved, then rebuild holder state.

    Holes inside ranges the sync fetched successfully are already proven
    empty, so only the residual ranges go through fill_gaps. An aborted sync
    stops the pipeline before gap filling and rebuild.
    """
    report = await sync_contract(rpc=rpc, store=store, contract=contract, kind=kind, **kwargs)
    contract = report.contract_address
    if report.status == "aborted":
        return report, None, None
    filled: SyncReport | None = None
    residual = merge_intervals([(u.range.start, u.range.end) for u in report.unresolved])
    if residual:
        gaps = [Gap(a, b, b - a + 1) for a, b in residual]
        log.info("pipeline.retry_residual", contract=contract, gaps=len(gaps),
                 blocks=sum(g.block_count for g in gaps))
        fill_kw = {k: v for k, v in kwargs.items() if k in ("config", "manifest", "on_progress", "stop")}
        filled = await fill_gaps(rpc=rpc, store=store, contract=contract, kind=kind, gaps=gaps, **fill_kw)
        if filled.status == "aborted":
            return report, filled, None
    rebuilt = await rebuild_state(store, contract, strict=strict)
    return report, filled, rebuilt


async def audit_range(
    rpc: RPCClient,
    store: LedgerStore,
    contract: Address,
    kind: ContractKind,
    r: BlockRange,
    *,
    config: FetchConfig | None = None,
) -> AuditReport:
    """Re-fetch `r` and list idempotency keys seen on chain but absent from the ledger."""
    contract = Address(contract.lower())
    res = await LogFetcher(rpc, config).fetch(contract, topics_for(kind), r)
    events, _ = _decode([(l, False) for l in res.logs], kind)
    onchain = {e.key for e in events}
    ledger = await store.event_keys(contract, r.start, r.end)
    missing = tuple(sorted(onchain - ledger))
    rep = AuditReport(contract, r, len(onchain), len(ledger), missing, tuple(res.unresolved))
    log_fn = log.info if rep.complete else log.warning
    log_fn("audit.done", contract=contract, range=str(r), onchain=rep.onchain_events,
           ledger=rep.ledger_events, missing=len(missing), unresolved=len(res.unresolved))
    return rep
