"""
tests/conftest.py
Shared fixtures: raw-log builders, an in-memory FakeRPC and a SQLite store on tmp_path.
"""

import asyncio

import pytest
import pytest_asyncio

from nftledger.adapters.sql_store import SqlLedgerStore
from nftledger.config import FetchConfig
from nftledger.domain.decoding import TRANSFER_BATCH_T0, TRANSFER_SINGLE_T0, TRANSFER_T0
from nftledger.domain.errors import RangeTooLargeError, TransientRPCError
from nftledger.domain.models import BlockHeader, RawLog
from nftledger.domain.value_types import Address, ZERO_ADDRESS

CONTRACT = Address("0x" + "c0" * 20)
ALICE = Address("0x" + "a1" * 20)
BOB = Address("0x" + "b2" * 20)
CAROL = Address("0x" + "c3" * 20)
OPERATOR = Address("0x" + "0e" * 20)
ZERO = ZERO_ADDRESS

GENESIS_TS = 1_600_000_000


# ---------------------------------------------------------------------------
# Raw-log builders
# ---------------------------------------------------------------------------

def topic_addr(a: str) -> str:
    return "0x" + "0" * 24 + a[2:].lower()


def word(n: int) -> str:
    return n.to_bytes(32, "big").hex()


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def log_721(frm, to, token, block, *, log_index=0, txn=None, address=CONTRACT, ts=None):
    return RawLog(
        address=address,
        topics=(TRANSFER_T0, topic_addr(frm), topic_addr(to), "0x" + word(token)),
        data_hex="0x",
        block_number=block,
        tx_hash=txn or tx(block * 1000 + log_index),
        log_index=log_index,
        block_timestamp=ts,
    )


def log_single(frm, to, token, amount, block, *, operator=OPERATOR, log_index=0, txn=None,
               address=CONTRACT, ts=None):
    return RawLog(
        address=address,
        topics=(TRANSFER_SINGLE_T0, topic_addr(operator), topic_addr(frm), topic_addr(to)),
        data_hex="0x" + word(token) + word(amount),
        block_number=block,
        tx_hash=txn or tx(block * 1000 + log_index),
        log_index=log_index,
        block_timestamp=ts,
    )


def batch_data(ids, values) -> str:
    ids_off = 64
    values_off = ids_off + 32 + 32 * len(ids)
    body = word(ids_off) + word(values_off)
    body += word(len(ids)) + "".join(word(i) for i in ids)
    body += word(len(values)) + "".join(word(v) for v in values)
    return "0x" + body


def log_batch(frm, to, ids, values, block, *, operator=OPERATOR, log_index=0, txn=None,
              address=CONTRACT, ts=None):
    return RawLog(
        address=address,
        topics=(TRANSFER_BATCH_T0, topic_addr(operator), topic_addr(frm), topic_addr(to)),
        data_hex=batch_data(ids, values),
        block_number=block,
        tx_hash=txn or tx(block * 1000 + log_index),
        log_index=log_index,
        block_timestamp=ts,
    )


# ---------------------------------------------------------------------------
# Fake RPC
# ---------------------------------------------------------------------------

class FakeRPC:
    """RPC port over an in-memory list of raw logs, with scripted failures."""

    def __init__(self, logs=(), *, latest=None):
        self.logs = list(logs)
        self.latest = latest if latest is not None else max((l.block_number for l in self.logs), default=0)
        self.calls: list[tuple[int, int]] = []
        self.block_calls: list[int] = []
        self.failures: dict[tuple[int, int], list[Exception]] = {}
        self.block_failures: set[int] = set()
        self.max_results: int | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, start, end, *errors):
        self.failures.setdefault((start, end), []).extend(errors)

    async def get_logs(self, address, topic0s, from_block, to_block):
        self.calls.append((from_block, to_block))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            queued = self.failures.get((from_block, to_block))
            if queued:
                raise queued.pop(0)
            out = [
                l for l in self.logs
                if l.address == address.lower()
                and from_block <= l.block_number <= to_block
                and l.topics and l.topics[0] in topic0s
            ]
            if self.max_results is not None and len(out) > self.max_results:
                raise RangeTooLargeError("query returned more than 10000 results")
            return out
        finally:
            self.in_flight -= 1

    async def latest_block(self):
        return self.latest

    async def aclose(self):
        pass

    async def get_block(self, number):
        self.block_calls.append(number)
        if number in self.block_failures:
            raise TransientRPCError(f"header {number} unavailable")
        return BlockHeader(number=number, timestamp=GENESIS_TS + number * 12, hash=tx(number))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config():
    return FetchConfig(max_chunk=100, concurrency=3, batch_delay=0.0, max_attempts=3,
                       backoff_base=0.0, backoff_max=0.0, rate_limit_delay=0.0)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest_asyncio.fixture
async def store(db_url):
    s = SqlLedgerStore(db_url)
    await s.migrate()
    yield s
    s.dispose()
