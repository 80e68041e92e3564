from __future__ import annotations
import asyncio, os, pyarrow as pa, pyarrow.parquet as pq
from typing import Sequence

from ..domain.models import HolderBalance, TransferEvent
from ..domain.value_types import Address
from ..ports.storage import LedgerStore

# uint256 values exceed every Arrow integer type: kept as decimal strings
BALANCES_SCHEMA = pa.schema([
    ("contract_address", pa.string()),
    ("holder_address", pa.string()),
    ("token_id", pa.string()),
    ("balance", pa.string()),
    ("last_updated_block", pa.int64()),
])

LEDGER_SCHEMA = pa.schema([
    ("contract_address", pa.string()),
    ("event_kind", pa.string()),
    ("operator", pa.string()),
    ("from_address", pa.string()),
    ("to_address", pa.string()),
    ("token_id", pa.string()),
    ("amount", pa.string()),
    ("block_number", pa.int64()),
    ("block_timestamp", pa.int64()),
    ("transaction_hash", pa.string()),
    ("log_index", pa.int64()),
    ("expansion_index", pa.int64()),
    ("timestamp_fallback", pa.bool_()),
])

_BIG = {"token_id", "balance", "amount"}


def _to_table(rows: Sequence[HolderBalance] | Sequence[TransferEvent], schema: pa.Schema) -> pa.Table:
    cols = {
        f.name: pa.array([str(getattr(r, f.name)) if f.name in _BIG else getattr(r, f.name) for r in rows], f.type)
        for f in schema
    }
    return pa.Table.from_pydict(cols, schema=schema)


def _write_atomic(table: pa.Table, path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = path + ".tmp"
    pq.write_table(table, tmp, compression="zstd", use_dictionary=True)
    os.replace(tmp, path)
    return path


async def write_balances(rows: Sequence[HolderBalance], path: str) -> int:
    await asyncio.to_thread(_write_atomic, _to_table(rows, BALANCES_SCHEMA), path)
    return len(rows)


async def export_balances(store: LedgerStore, contract: Address, path: str) -> int:
    """Materialized holder rows of `contract` to Parquet; returns the row count."""
    return await write_balances(await store.balances(Address(contract.lower())), path)


async def export_ledger(store: LedgerStore, contract: Address, path: str) -> int:
    """Ledger rows of `contract` in replay order to Parquet; returns the row count."""
    rows = await store.events(Address(contract.lower()))
    await asyncio.to_thread(_write_atomic, _to_table(rows, LEDGER_SCHEMA), path)
    return len(rows)
