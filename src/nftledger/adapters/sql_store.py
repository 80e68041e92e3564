from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Any, Iterator, Sequence

import structlog
from sqlalchemy import Engine, create_engine, delete, func, insert, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.errors import DataIntegrityError
from ..domain.models import AllocatorReport, HolderBalance, SyncProgress, TransferEvent
from ..domain.value_types import Address, TxHash, ZERO_ADDRESS
from ..ports.storage import BalanceFold, LedgerStore
from . import schema
from .schema import EVENT_KEY, REPLAY_ORDER, holder_balances, sync_checkpoints, sync_progress, transfer_events

log = structlog.get_logger(__name__)

_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def _event_row(e: TransferEvent) -> dict[str, Any]:
    return {
        "contract_address": e.contract_address,
        "event_kind": e.event_kind,
        "operator": e.operator,
        "from_address": e.from_address,
        "to_address": e.to_address,
        "token_id": str(e.token_id),
        "amount": str(e.amount),
        "block_number": e.block_number,
        "block_timestamp": e.block_timestamp,
        "transaction_hash": e.transaction_hash,
        "log_index": e.log_index,
        "expansion_index": e.expansion_index,
        "timestamp_fallback": e.timestamp_fallback,
    }

def _row_event(r: Row) -> TransferEvent:
    return TransferEvent(
        contract_address=Address(r.contract_address),
        event_kind=r.event_kind,
        operator=Address(r.operator),
        from_address=Address(r.from_address),
        to_address=Address(r.to_address),
        token_id=int(r.token_id),
        amount=int(r.amount),
        block_number=r.block_number,
        block_timestamp=r.block_timestamp,
        transaction_hash=TxHash(r.transaction_hash),
        log_index=r.log_index,
        expansion_index=r.expansion_index,
        timestamp_fallback=bool(r.timestamp_fallback),
    )

def _row_balance(r: Row) -> HolderBalance:
    return HolderBalance(
        contract_address=Address(r.contract_address),
        holder_address=Address(r.holder_address),
        token_id=int(r.token_id),
        balance=int(r.balance),
        last_updated_block=r.last_updated_block,
    )


class SqlLedgerStore(LedgerStore):
    """
    LedgerStore over SQLAlchemy Core (SQLite or PostgreSQL).

    Work runs synchronously in a worker thread via asyncio.to_thread so the
    event loop only suspends at store transactions. SQLite work is serialized
    through one lock; PostgreSQL connections come from the engine pool.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine = self._make_engine(url, echo)
        self.dialect = self.engine.dialect.name
        if self.dialect not in _INSERTS:
            raise ValueError(f"unsupported database dialect: {self.dialect}")
        self._insert = _INSERTS[self.dialect]
        self._lock: Any = threading.Lock() if self.dialect == "sqlite" else contextlib.nullcontext()

    @staticmethod
    def _make_engine(url: str, echo: bool) -> Engine:
        if url.startswith("sqlite"):
            kw: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kw["poolclass"] = StaticPool
            return create_engine(url, echo=echo, **kw)
        return create_engine(url, echo=echo, pool_pre_ping=True)

    @contextlib.contextmanager
    def _tx(self) -> Iterator[Connection]:
        with self._lock, self.engine.begin() as conn:
            yield conn

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    def dispose(self) -> None:
        self.engine.dispose()

    # ---------- schema --------------------------------------------------------

    def _migrate(self) -> int:
        with self._tx() as conn:
            version, applied = schema.migrate(conn)
        if applied:
            log.info("store.migrated", version=version, applied=applied)
        return version

    async def migrate(self) -> int:
        return await self._run(self._migrate)

    # ---------- ledger writer -------------------------------------------------

    def _write_events(self, events: Sequence[TransferEvent]) -> int:
        if not events:
            return 0
        for e in events:
            if e.amount < 0:
                raise DataIntegrityError(f"negative amount in {e.key}")
        stmt = self._insert(transfer_events).on_conflict_do_nothing(index_elements=list(EVENT_KEY))
        inserted = 0
        try:
            with self._tx() as conn:
                for e in events:
                    inserted += conn.execute(stmt, _event_row(e)).rowcount
        except IntegrityError as exc:
            # anything but the idempotency key colliding (e.g. a lagging id allocator)
            raise DataIntegrityError(f"unexpected constraint violation writing ledger: {exc.orig}") from exc
        return inserted

    async def write_events(self, events: Sequence[TransferEvent]) -> int:
        return await self._run(self._write_events, list(events))

    # ---------- reads ---------------------------------------------------------

    @staticmethod
    def _scoped(stmt, column, contract: Address, start: int | None, end: int | None):
        stmt = stmt.where(transfer_events.c.contract_address == contract)
        if start is not None: stmt = stmt.where(column >= start)
        if end is not None: stmt = stmt.where(column <= end)
        return stmt

    def _distinct_blocks(self, contract: Address, start: int | None, end: int | None) -> list[int]:
        c = transfer_events.c
        stmt = self._scoped(select(c.block_number).distinct(), c.block_number, contract, start, end)
        with self._tx() as conn:
            return list(conn.execute(stmt.order_by(c.block_number)).scalars())

    async def distinct_blocks(self, contract: Address, start: int | None = None, end: int | None = None) -> list[int]:
        return await self._run(self._distinct_blocks, contract, start, end)

    def _events(self, contract: Address, start: int | None, end: int | None) -> list[TransferEvent]:
        stmt = self._scoped(select(transfer_events), transfer_events.c.block_number, contract, start, end)
        with self._tx() as conn:
            return [_row_event(r) for r in conn.execute(stmt.order_by(*REPLAY_ORDER))]

    async def events(self, contract: Address, start: int | None = None, end: int | None = None) -> list[TransferEvent]:
        return await self._run(self._events, contract, start, end)

    def _event_keys(self, contract: Address, start: int, end: int) -> set[tuple[str, int, int]]:
        c = transfer_events.c
        stmt = self._scoped(select(c.transaction_hash, c.log_index, c.expansion_index), c.block_number,
                            contract, start, end)
        with self._tx() as conn:
            return {(r[0], r[1], r[2]) for r in conn.execute(stmt)}

    async def event_keys(self, contract: Address, start: int, end: int) -> set[tuple[str, int, int]]:
        return await self._run(self._event_keys, contract, start, end)

    # ---------- materialized state -------------------------------------------

    def _rebuild_balances(self, contract: Address, fold: BalanceFold) -> list[HolderBalance]:
        stmt = (select(transfer_events)
                .where(transfer_events.c.contract_address == contract)
                .order_by(*REPLAY_ORDER)
                .execution_options(yield_per=1_000))
        with self._tx() as conn:
            conn.execute(delete(holder_balances).where(holder_balances.c.contract_address == contract))
            rows = list(fold(_row_event(r) for r in conn.execute(stmt)))
            if rows:
                conn.execute(insert(holder_balances), [
                    {"contract_address": b.contract_address, "holder_address": b.holder_address,
                     "token_id": str(b.token_id), "balance": str(b.balance),
                     "last_updated_block": b.last_updated_block}
                    for b in rows
                ])
        return rows

    async def rebuild_balances(self, contract: Address, fold: BalanceFold) -> list[HolderBalance]:
        return await self._run(self._rebuild_balances, contract, fold)

    def _balances(self, contract: Address) -> list[HolderBalance]:
        stmt = select(holder_balances).where(holder_balances.c.contract_address == contract)
        with self._tx() as conn:
            out = [_row_balance(r) for r in conn.execute(stmt)]
        out.sort(key=lambda b: (b.holder_address, b.token_id))
        return out

    async def balances(self, contract: Address) -> list[HolderBalance]:
        return await self._run(self._balances, contract)

    def _supply_totals(self, contract: Address) -> tuple[int, int, int]:
        c = transfer_events.c
        minted = burned = 0
        with self._tx() as conn:
            mint_or_burn = (select(c.from_address, c.to_address, c.amount)
                            .where(c.contract_address == contract)
                            .where((c.from_address == ZERO_ADDRESS) | (c.to_address == ZERO_ADDRESS)))
            for frm, to, amount in conn.execute(mint_or_burn):
                if frm == ZERO_ADDRESS: minted += int(amount)
                if to == ZERO_ADDRESS: burned += int(amount)
            state = sum(int(b) for b in conn.execute(
                select(holder_balances.c.balance).where(holder_balances.c.contract_address == contract)).scalars())
        return minted, burned, state

    async def supply_totals(self, contract: Address) -> tuple[int, int, int]:
        return await self._run(self._supply_totals, contract)

    # ---------- checkpoints / progress ---------------------------------------

    def _get_checkpoint(self, contract: Address) -> int | None:
        with self._tx() as conn:
            return conn.execute(select(sync_checkpoints.c.last_block)
                                .where(sync_checkpoints.c.contract_address == contract)).scalar()

    async def get_checkpoint(self, contract: Address) -> int | None:
        return await self._run(self._get_checkpoint, contract)

    def _save_checkpoint(self, contract: Address, block: int) -> None:
        with self._tx() as conn:
            prev = conn.execute(select(sync_checkpoints.c.last_block)
                                .where(sync_checkpoints.c.contract_address == contract)).scalar()
            if prev is not None and prev >= block:
                return
            stmt = self._insert(sync_checkpoints).values(contract_address=contract, last_block=block,
                                                          updated_at=time.time())
            conn.execute(stmt.on_conflict_do_update(
                index_elements=["contract_address"],
                set_={"last_block": stmt.excluded.last_block, "updated_at": stmt.excluded.updated_at},
            ))

    async def save_checkpoint(self, contract: Address, block: int) -> None:
        await self._run(self._save_checkpoint, contract, block)

    def _record_progress(self, p: SyncProgress) -> None:
        values = {"contract_address": p.contract_address, "processed_blocks": p.processed_blocks,
                  "total_blocks": p.total_blocks, "events_found": p.events_found,
                  "events_inserted": p.events_inserted, "status": p.status, "error": p.error,
                  "updated_at": time.time()}
        stmt = self._insert(sync_progress).values(**values)
        with self._tx() as conn:
            conn.execute(stmt.on_conflict_do_update(
                index_elements=["contract_address"],
                set_={k: stmt.excluded[k] for k in values if k != "contract_address"},
            ))

    async def record_progress(self, progress: SyncProgress) -> None:
        await self._run(self._record_progress, progress)

    def _get_progress(self, contract: Address) -> SyncProgress | None:
        with self._tx() as conn:
            r = conn.execute(select(sync_progress).where(sync_progress.c.contract_address == contract)).first()
        if r is None:
            return None
        return SyncProgress(contract_address=Address(r.contract_address), processed_blocks=r.processed_blocks,
                            total_blocks=r.total_blocks, events_found=r.events_found,
                            events_inserted=r.events_inserted, status=r.status, error=r.error)

    async def get_progress(self, contract: Address) -> SyncProgress | None:
        return await self._run(self._get_progress, contract)

    # ---------- id allocator --------------------------------------------------

    def _reconcile_id_allocator(self) -> AllocatorReport:
        table = transfer_events.name
        with self._tx() as conn:
            max_id = conn.execute(select(func.coalesce(func.max(transfer_events.c.id), 0))).scalar_one()
            if self.dialect == "sqlite":
                seq = conn.execute(text("SELECT seq FROM sqlite_sequence WHERE name = :t"), {"t": table}).scalar()
                next_value = (seq or 0) + 1
                corrected = next_value < max_id + 1
                if corrected:
                    if seq is None:
                        conn.execute(text("INSERT INTO sqlite_sequence (name, seq) VALUES (:t, :m)"),
                                     {"t": table, "m": max_id})
                    else:
                        conn.execute(text("UPDATE sqlite_sequence SET seq = :m WHERE name = :t"),
                                     {"t": table, "m": max_id})
            else:
                seq_name = conn.execute(text("SELECT pg_get_serial_sequence(:t, 'id')"), {"t": table}).scalar_one()
                last_value, is_called = conn.execute(text(f"SELECT last_value, is_called FROM {seq_name}")).one()
                next_value = last_value + 1 if is_called else last_value
                corrected = next_value < max_id + 1
                if corrected:
                    conn.execute(text("SELECT setval(:s, :m, true)"), {"s": seq_name, "m": max_id})
        if corrected:
            log.warning("store.allocator_corrected", table=table, was=next_value, now=max_id + 1)
            next_value = max_id + 1
        return AllocatorReport(table=table, next_value=next_value, max_id=max_id, corrected=corrected)

    async def reconcile_id_allocator(self) -> AllocatorReport:
        return await self._run(self._reconcile_id_allocator)
