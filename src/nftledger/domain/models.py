from __future__ import annotations
from dataclasses import dataclass, field
from .value_types import Address, ContractKind, EventKind, RunStatus, Status, TxHash, ZERO_ADDRESS
from .errors import PartialRangeFailure

@dataclass(slots=True, frozen=True, order=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1
    def __str__(self) -> str: return f"[{self.start},{self.end}]"

@dataclass(slots=True, frozen=True)
class RawLog:
    address: Address
    topics: tuple[str, ...]            # lowercased with 0x
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: TxHash
    log_index: int
    block_timestamp: int | None = None

@dataclass(slots=True, frozen=True)
class BlockHeader:
    number: int
    timestamp: int
    hash: str

@dataclass(slots=True, frozen=True)
class TransferEvent:
    contract_address: Address
    event_kind: EventKind
    operator: Address
    from_address: Address
    to_address: Address
    token_id: int
    amount: int
    block_number: int
    block_timestamp: int
    transaction_hash: TxHash
    log_index: int
    expansion_index: int = 0
    timestamp_fallback: bool = False

    @property
    def key(self) -> tuple[str, int, int]:
        """Idempotency key of the ledger row."""
        return (self.transaction_hash, self.log_index, self.expansion_index)

    @property
    def is_mint(self) -> bool: return self.from_address == ZERO_ADDRESS

    @property
    def is_burn(self) -> bool: return self.to_address == ZERO_ADDRESS

@dataclass(slots=True, frozen=True)
class HolderBalance:
    contract_address: Address
    holder_address: Address
    token_id: int
    balance: int
    last_updated_block: int

@dataclass(slots=True, frozen=True)
class Gap:
    start: int
    end: int
    block_count: int

@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Status = "pending"
    attempts: int = 0
    error: str | None = None
    logs: int = 0
    events: int = 0
    updated_at: float = 0.0

@dataclass(slots=True, frozen=True)
class UnresolvedRange:
    range: BlockRange
    reason: str                 # "retries_exhausted" | "range_too_large" | "aborted"
    error: str | None = None
    attempts: int = 0

@dataclass(slots=True, frozen=True)
class SyncProgress:
    contract_address: Address
    processed_blocks: int
    total_blocks: int
    events_found: int
    events_inserted: int
    status: RunStatus = "running"
    error: str | None = None

    @property
    def percent(self) -> float:
        return 100.0 if self.total_blocks == 0 else 100.0 * self.processed_blocks / self.total_blocks

@dataclass(slots=True, frozen=True)
class SyncReport:
    contract_address: Address
    contract_kind: ContractKind
    requested: BlockRange | None
    processed_blocks: int = 0
    total_blocks: int = 0
    logs_fetched: int = 0
    events_found: int = 0
    events_inserted: int = 0
    undecodable_logs: int = 0
    unresolved: tuple[UnresolvedRange, ...] = ()
    status: RunStatus = "completed"

    @property
    def duplicates_skipped(self) -> int: return self.events_found - self.events_inserted

    def raise_for_residual(self) -> None:
        """Raise PartialRangeFailure if any sub-range was left unresolved."""
        if self.unresolved:
            raise PartialRangeFailure(self.contract_address, list(self.unresolved))

@dataclass(slots=True, frozen=True)
class RebuildResult:
    contract_address: Address
    holders: int
    tokens: int
    records: int
    minted: int = 0
    burned: int = 0
    supply: int = 0
    negative_balances: int = 0

@dataclass(slots=True, frozen=True)
class SupplyReport:
    contract_address: Address
    minted: int
    burned: int
    state_supply: int
    @property
    def expected_supply(self) -> int: return self.minted - self.burned
    @property
    def consistent(self) -> bool: return self.expected_supply == self.state_supply

@dataclass(slots=True, frozen=True)
class AllocatorReport:
    table: str
    next_value: int
    max_id: int
    corrected: bool

@dataclass(slots=True, frozen=True)
class AuditReport:
    contract_address: Address
    range: BlockRange
    onchain_events: int
    ledger_events: int
    missing: tuple[tuple[str, int, int], ...] = field(default_factory=tuple)
    unresolved: tuple[UnresolvedRange, ...] = ()
    @property
    def complete(self) -> bool: return not self.missing and not self.unresolved
