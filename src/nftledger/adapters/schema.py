"""
Relational schema for the ledger, the materialized holder state and sync
bookkeeping, plus the ordered list of migrations applied at startup.

Uniqueness and ordering contracts live here and only here:
  - ledger key:   (transaction_hash, log_index, expansion_index)
  - replay order: (block_number, log_index, expansion_index)
"""
from __future__ import annotations

import time
from typing import Callable

from sqlalchemy import (
    BigInteger, Boolean, Column, Float, Index, Integer, MetaData, PrimaryKeyConstraint,
    String, Table, Text, UniqueConstraint, false, func, insert, select,
)
from sqlalchemy.engine import Connection

from ..domain.errors import SchemaVersionError

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY
_Id = BigInteger().with_variant(Integer(), "sqlite")

transfer_events = Table(
    "transfer_events", metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("contract_address", String(42), nullable=False),
    Column("event_kind", String(16), nullable=False),
    Column("operator", String(42), nullable=False),
    Column("from_address", String(42), nullable=False),
    Column("to_address", String(42), nullable=False),
    Column("token_id", String(78), nullable=False),     # uint256 as decimal text
    Column("amount", String(78), nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("block_timestamp", BigInteger, nullable=False),
    Column("transaction_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("expansion_index", Integer, nullable=False, server_default="0"),
    Column("timestamp_fallback", Boolean, nullable=False, server_default=false()),
    UniqueConstraint("transaction_hash", "log_index", "expansion_index", name="uq_transfer_events_key"),
    Index("ix_transfer_events_replay", "contract_address", "block_number", "log_index", "expansion_index"),
    sqlite_autoincrement=True,
)

holder_balances = Table(
    "holder_balances", metadata,
    Column("contract_address", String(42), nullable=False),
    Column("holder_address", String(42), nullable=False),
    Column("token_id", String(78), nullable=False),
    Column("balance", String(78), nullable=False),
    Column("last_updated_block", BigInteger, nullable=False),
    PrimaryKeyConstraint("contract_address", "holder_address", "token_id", name="pk_holder_balances"),
)

sync_checkpoints = Table(
    "sync_checkpoints", metadata,
    Column("contract_address", String(42), primary_key=True),
    Column("last_block", BigInteger, nullable=False),
    Column("updated_at", Float, nullable=False),
)

sync_progress = Table(
    "sync_progress", metadata,
    Column("contract_address", String(42), primary_key=True),
    Column("processed_blocks", BigInteger, nullable=False),
    Column("total_blocks", BigInteger, nullable=False),
    Column("events_found", BigInteger, nullable=False),
    Column("events_inserted", BigInteger, nullable=False),
    Column("status", String(16), nullable=False),
    Column("error", Text),
    Column("updated_at", Float, nullable=False),
)

schema_version = Table(
    "schema_version", metadata,
    Column("version", Integer, primary_key=True),
    Column("description", String(200), nullable=False),
    Column("applied_at", Float, nullable=False),
)

EVENT_KEY = ("transaction_hash", "log_index", "expansion_index")
REPLAY_ORDER = (
    transfer_events.c.block_number,
    transfer_events.c.log_index,
    transfer_events.c.expansion_index,
)

# ---------- migrations --------------------------------------------------------

def _v1(conn: Connection) -> None:
    transfer_events.create(conn, checkfirst=True)
    holder_balances.create(conn, checkfirst=True)

def _v2(conn: Connection) -> None:
    sync_checkpoints.create(conn, checkfirst=True)
    sync_progress.create(conn, checkfirst=True)

MIGRATIONS: list[tuple[int, str, Callable[[Connection], None]]] = [
    (1, "transfer ledger and holder balances", _v1),
    (2, "sync checkpoints and progress", _v2),
]
SCHEMA_VERSION = MIGRATIONS[-1][0]


def current_version(conn: Connection) -> int:
    schema_version.create(conn, checkfirst=True)
    return conn.execute(select(func.coalesce(func.max(schema_version.c.version), 0))).scalar_one()


def migrate(conn: Connection) -> tuple[int, list[int]]:
    """Apply pending migrations inside the caller's transaction; return (version, applied)."""
    cur = current_version(conn)
    if cur > SCHEMA_VERSION:
        raise SchemaVersionError(f"store schema v{cur} is newer than supported v{SCHEMA_VERSION}")
    applied: list[int] = []
    for version, description, step in MIGRATIONS:
        if version <= cur:
            continue
        step(conn)
        conn.execute(insert(schema_version).values(version=version, description=description, applied_at=time.time()))
        applied.append(version)
    return SCHEMA_VERSION, applied
