from __future__ import annotations

import re

from eth_utils import to_normalized_address

from .errors import LogDecodeError
from .models import RawLog, TransferEvent
from .value_types import Address, ContractKind, TxHash, ZERO_ADDRESS


# Topic0 constants (lowercase, with "0x")
TRANSFER_T0        = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
TRANSFER_SINGLE_T0 = "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"
TRANSFER_BATCH_T0  = "0x4a39dc06d4c0dbc64b70af90fd698a233a518aa5d07e595d983b8c0526c8f7fb"

_TOPICS: dict[str, tuple[str, ...]] = {
    "ERC721":  (TRANSFER_T0,),
    "ERC1155": (TRANSFER_SINGLE_T0, TRANSFER_BATCH_T0),
}

def topics_for(kind: ContractKind) -> tuple[str, ...]:
    """topic0 OR-filter to request from eth_getLogs for a contract of this kind."""
    try:
        return _TOPICS[kind]
    except KeyError:
        raise ValueError(f"unsupported contract kind: {kind!r}") from None

# --------- 32B word slicing (fast, no eth_abi) --------------------------------

_TOPIC_RE = re.compile(r"0x[0-9a-fA-F]{64}")
_DATA_RE = re.compile(r"(0x)?[0-9a-fA-F]*")

def _hexstr_to_bytes(s: str) -> bytes:
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    return bytes.fromhex(h) if h else b""

def _word(b: bytes, i: int) -> bytes: o = i*32; return b[o:o+32]
def _u256(w: bytes) -> int: return int.from_bytes(w, "big")
def _addr_from_word(w: bytes) -> Address: return Address(to_normalized_address("0x" + w[-20:].hex()))
def _addr_from_topic(t: str) -> Address: return Address(to_normalized_address("0x" + t[-40:]))
def _u256_from_topic(t: str) -> int: return int(t, 16)

def _uint_array(data: bytes, head_word: int) -> list[int]:
    """Decode a dynamic uint256[] whose offset sits in head word `head_word`."""
    offset = _u256(_word(data, head_word))
    if offset % 32 or offset + 32 > len(data):
        raise LogDecodeError(f"array offset {offset} out of bounds (data={len(data)}B)")
    n = _u256(data[offset:offset+32])
    start = offset + 32
    if start + n*32 > len(data):
        raise LogDecodeError(f"array of {n} items overruns data ({len(data)}B)")
    return [_u256(data[start + k*32:start + (k+1)*32]) for k in range(n)]

# ---------------------------- public API --------------------------------------

def normalize(raw: RawLog, kind: ContractKind, *, timestamp_fallback: bool = False) -> list[TransferEvent]:
    """
    Decode one raw log into canonical TransferEvent rows.

    ERC-721 Transfer and ERC-1155 TransferSingle give exactly one row. A
    TransferBatch expands into one row per (id, value) pair; all share the log's
    log_index and are told apart by expansion_index. Logs whose topic0 is not a
    transfer topic for `kind` give []. Addresses come out lowercased.
    """
    if not raw.topics:
        return []
    t0 = raw.topics[0].lower()
    if t0 not in topics_for(kind):
        return []

    bad = [t for t in raw.topics if not _TOPIC_RE.fullmatch(t)]
    if bad:
        raise LogDecodeError(f"log {raw.tx_hash}:{raw.log_index} has a non 32-byte topic {bad[0]!r}")
    if not _DATA_RE.fullmatch(raw.data_hex or ""):
        raise LogDecodeError(f"log {raw.tx_hash}:{raw.log_index} data is not hex")
    data = _hexstr_to_bytes(raw.data_hex)
    base = dict(
        contract_address=Address(raw.address.lower()),
        block_number=raw.block_number,
        block_timestamp=raw.block_timestamp or 0,
        transaction_hash=TxHash(raw.tx_hash.lower()),
        log_index=raw.log_index,
        timestamp_fallback=timestamp_fallback,
    )

    if t0 == TRANSFER_T0:
        return _decode_721(raw, data, base)
    if t0 == TRANSFER_SINGLE_T0:
        return _decode_single(raw, data, base)
    return _decode_batch(raw, data, base)


def _decode_721(raw: RawLog, data: bytes, base: dict) -> list[TransferEvent]:
    top = raw.topics
    if len(top) == 4:
        frm, to, token = _addr_from_topic(top[1]), _addr_from_topic(top[2]), _u256_from_topic(top[3])
    elif len(top) == 3:
        # ERC-20 Transfer shares the signature; value in data, not a token id
        return []
    elif len(top) == 1 and len(data) >= 32 * 3:
        # pre-standard 721s (e.g. CryptoKitties) left every argument unindexed
        frm, to, token = _addr_from_word(_word(data, 0)), _addr_from_word(_word(data, 1)), _u256(_word(data, 2))
    else:
        raise LogDecodeError(f"Transfer log {raw.tx_hash}:{raw.log_index} has {len(top)} topics")
    return [TransferEvent(event_kind="Single", operator=ZERO_ADDRESS, from_address=frm, to_address=to,
                          token_id=token, amount=1, expansion_index=0, **base)]


def _decode_single(raw: RawLog, data: bytes, base: dict) -> list[TransferEvent]:
    # topics: operator, from, to ; data: ["uint256 id", "uint256 value"]
    top = raw.topics
    if len(top) < 4 or len(data) < 32 * 2:
        raise LogDecodeError(f"TransferSingle log {raw.tx_hash}:{raw.log_index} is truncated")
    return [TransferEvent(
        event_kind="Single",
        operator=_addr_from_topic(top[1]),
        from_address=_addr_from_topic(top[2]),
        to_address=_addr_from_topic(top[3]),
        token_id=_u256(_word(data, 0)),
        amount=_u256(_word(data, 1)),
        expansion_index=0,
        **base,
    )]


def _decode_batch(raw: RawLog, data: bytes, base: dict) -> list[TransferEvent]:
    # topics: operator, from, to ; data: ["uint256[] ids", "uint256[] values"]
    top = raw.topics
    if len(top) < 4 or len(data) < 32 * 4:
        raise LogDecodeError(f"TransferBatch log {raw.tx_hash}:{raw.log_index} is truncated")
    ids = _uint_array(data, 0)
    values = _uint_array(data, 1)
    if len(ids) != len(values):
        raise LogDecodeError(
            f"TransferBatch log {raw.tx_hash}:{raw.log_index}: {len(ids)} ids vs {len(values)} values")
    operator, frm, to = _addr_from_topic(top[1]), _addr_from_topic(top[2]), _addr_from_topic(top[3])
    return [
        TransferEvent(event_kind="BatchExpanded", operator=operator, from_address=frm, to_address=to,
                      token_id=tid, amount=val, expansion_index=i, **base)
        for i, (tid, val) in enumerate(zip(ids, values))
    ]
