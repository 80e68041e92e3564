from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import structlog

from ..domain.errors import DataIntegrityError
from ..domain.models import HolderBalance, RebuildResult, SupplyReport, TransferEvent
from ..domain.value_types import Address, ZERO_ADDRESS
from ..ports.storage import LedgerStore

log = structlog.get_logger(__name__)

HolderKey = tuple[Address, int]     # (holder_address, token_id)


@dataclass(slots=True)
class BalanceAcc:
    balance: int = 0
    last_updated_block: int = 0

    def apply(self, delta: int, block: int) -> None:
        self.balance += delta
        if block > self.last_updated_block:
            self.last_updated_block = block


def fold_balances(events: Iterable[TransferEvent]) -> dict[HolderKey, BalanceAcc]:
    """Signed-delta fold over ordered events; the zero address is never credited or debited."""
    acc: dict[HolderKey, BalanceAcc] = {}
    for e in events:
        if e.from_address != ZERO_ADDRESS:
            acc.setdefault((e.from_address, e.token_id), BalanceAcc()).apply(-e.amount, e.block_number)
        if e.to_address != ZERO_ADDRESS:
            acc.setdefault((e.to_address, e.token_id), BalanceAcc()).apply(e.amount, e.block_number)
    return acc


def materialize(acc: dict[HolderKey, BalanceAcc], contract: Address) -> list[HolderBalance]:
    """Strictly positive accumulators as HolderBalance rows, ordered by (holder, token_id)."""
    return [
        HolderBalance(contract, holder, token_id, a.balance, a.last_updated_block)
        for (holder, token_id), a in sorted(acc.items())
        if a.balance > 0
    ]


@dataclass(slots=True)
class _Replay:
    """BalanceFold handed to the store; keeps the tallies of the last replay."""
    contract: Address
    strict: bool
    records: int = 0
    minted: int = 0
    burned: int = 0
    negative: list[tuple[HolderKey, int]] = field(default_factory=list)

    def _count(self, events: Iterable[TransferEvent]) -> Iterable[TransferEvent]:
        for e in events:
            self.records += 1
            if e.is_mint: self.minted += e.amount
            if e.is_burn: self.burned += e.amount
            yield e

    def __call__(self, events: Iterable[TransferEvent]) -> list[HolderBalance]:
        acc = fold_balances(self._count(events))
        self.negative = [(k, a.balance) for k, a in sorted(acc.items()) if a.balance < 0]
        if self.negative:
            (holder, token_id), bal = self.negative[0]
            if self.strict:
                raise DataIntegrityError(
                    f"{self.contract}: {len(self.negative)} negative balance(s), "
                    f"first holder={holder} token={token_id} balance={bal}; ledger is missing or duplicating events"
                )
            log.error("rebuild.negative_balances", contract=self.contract, count=len(self.negative),
                      holder=holder, token_id=str(token_id), balance=str(bal))
        return materialize(acc, self.contract)


async def rebuild_state(store: LedgerStore, contract: Address, *, strict: bool = True) -> RebuildResult:
    """
    Recompute the holder state of `contract` from its full ordered ledger.

    The delete, replay and insert share one store transaction; with strict=True
    a negative balance raises DataIntegrityError and the previous state stays.
    """
    replay = _Replay(contract, strict)
    rows = await store.rebuild_balances(contract, replay)
    res = RebuildResult(
        contract_address=contract,
        holders=len({b.holder_address for b in rows}),
        tokens=len({b.token_id for b in rows}),
        records=replay.records,
        minted=replay.minted,
        burned=replay.burned,
        supply=sum(b.balance for b in rows),
        negative_balances=len(replay.negative),
    )
    log.info("rebuild.done", contract=contract, holders=res.holders, tokens=res.tokens,
             records=res.records, supply=str(res.supply))
    return res


async def verify_supply(store: LedgerStore, contract: Address, *, strict: bool = False) -> SupplyReport:
    """Check sum(state balances) == minted - burned, both totals taken from the ledger."""
    minted, burned, state = await store.supply_totals(contract)
    rep = SupplyReport(contract, minted, burned, state)
    if rep.consistent:
        log.info("verify.ok", contract=contract, supply=str(state))
        return rep
    log.error("verify.mismatch", contract=contract, minted=str(minted), burned=str(burned),
              expected=str(rep.expected_supply), state=str(state))
    if strict:
        raise DataIntegrityError(
            f"{contract}: state supply {state} != minted {minted} - burned {burned} = {rep.expected_supply}"
        )
    return rep


async def snapshot_at(store: LedgerStore, contract: Address, block: int) -> list[HolderBalance]:
    """
    Holder balances of `contract` as of the end of `block`.

    Replays the ledger prefix up to and including `block` in memory; the
    materialized holder table is neither read nor written.
    """
    contract = Address(contract.lower())
    events = await store.events(contract, end=block)
    acc = fold_balances(events)
    negative = sum(1 for a in acc.values() if a.balance < 0)
    if negative:
        log.warning("snapshot.negative_balances", contract=contract, block=block, count=negative)
    rows = materialize(acc, contract)
    log.info("snapshot.done", contract=contract, block=block, records=len(events), holders=len(rows))
    return rows
