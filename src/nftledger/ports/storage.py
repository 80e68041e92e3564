from __future__ import annotations

from typing import Callable, Iterable, Protocol, Sequence
from ..domain.models import AllocatorReport, ChunkRec, HolderBalance, SyncProgress, TransferEvent
from ..domain.value_types import Address

# Pure fold used by rebuild_balances: ordered ledger in, positive balances out.
BalanceFold = Callable[[Iterable[TransferEvent]], Sequence[HolderBalance]]


class LedgerStore(Protocol):
    """Port for the relational store holding the ledger and the materialized state."""

    async def migrate(self) -> int:
        """Bring the schema to the latest version; return that version."""

    async def write_events(self, events: Sequence[TransferEvent]) -> int:
        """Insert events in one transaction, skipping existing keys; return rows inserted."""

    async def distinct_blocks(self, contract: Address, start: int | None = None, end: int | None = None) -> list[int]:
        """Ascending distinct block numbers present in the ledger for `contract`."""

    async def events(self, contract: Address, start: int | None = None, end: int | None = None) -> list[TransferEvent]:
        """Ledger rows ordered by (block_number, log_index, expansion_index)."""

    async def event_keys(self, contract: Address, start: int, end: int) -> set[tuple[str, int, int]]:
        """Idempotency keys of ledger rows in [start, end]."""

    async def rebuild_balances(self, contract: Address, fold: BalanceFold) -> list[HolderBalance]:
        """Delete, replay the ordered ledger through `fold`, insert its output; one transaction."""

    async def balances(self, contract: Address) -> list[HolderBalance]:
        """Materialized holder rows ordered by (holder, token_id)."""

    async def supply_totals(self, contract: Address) -> tuple[int, int, int]:
        """(minted, burned, sum of materialized balances) for `contract`."""

    async def get_checkpoint(self, contract: Address) -> int | None: ...

    async def save_checkpoint(self, contract: Address, block: int) -> None: ...

    async def record_progress(self, progress: SyncProgress) -> None: ...

    async def get_progress(self, contract: Address) -> SyncProgress | None: ...

    async def reconcile_id_allocator(self) -> AllocatorReport:
        """Move the ledger id allocator forward if it lags behind max(id) + 1."""


class ManifestSink(Protocol):
    """Port for appending run/chunk status records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""


# Progress signal consumed by a status layer (CLI bar, HTTP poller, ...).
ProgressListener = Callable[[SyncProgress], None]
