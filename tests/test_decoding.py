"""
tests/test_decoding.py
Raw log → TransferEvent normalization for ERC-721 and ERC-1155.
"""

import pytest
from eth_utils import keccak

from nftledger.domain.decoding import (
    TRANSFER_BATCH_T0,
    TRANSFER_SINGLE_T0,
    TRANSFER_T0,
    normalize,
    topics_for,
)
from nftledger.domain.errors import LogDecodeError
from nftledger.domain.models import RawLog

from conftest import (
    ALICE, BOB, CONTRACT, OPERATOR, ZERO,
    batch_data, log_721, log_batch, log_single, topic_addr, tx, word,
)


def _sig(text: str) -> str:
    return "0x" + keccak(text=text).hex()


class TestTopics:
    def test_topic_constants_match_signatures(self):
        assert TRANSFER_T0 == _sig("Transfer(address,address,uint256)")
        assert TRANSFER_SINGLE_T0 == _sig("TransferSingle(address,address,address,uint256,uint256)")
        assert TRANSFER_BATCH_T0 == _sig("TransferBatch(address,address,address,uint256[],uint256[])")

    def test_topics_for_kind(self):
        assert topics_for("ERC721") == (TRANSFER_T0,)
        assert set(topics_for("ERC1155")) == {TRANSFER_SINGLE_T0, TRANSFER_BATCH_T0}

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            topics_for("ERC20")


# ---------------------------------------------------------------------------
# ERC-721
# ---------------------------------------------------------------------------

class TestErc721:
    def test_mint(self):
        [e] = normalize(log_721(ZERO, ALICE, 7, 100, ts=123), "ERC721")
        assert e.event_kind == "Single"
        assert e.from_address == ZERO and e.to_address == ALICE
        assert e.token_id == 7 and e.amount == 1
        assert e.operator == ZERO
        assert e.is_mint and not e.is_burn
        assert e.block_number == 100 and e.block_timestamp == 123
        assert e.expansion_index == 0
        assert e.contract_address == CONTRACT

    def test_uint256_token_id(self):
        big = 2**256 - 1
        [e] = normalize(log_721(ALICE, BOB, big, 1), "ERC721")
        assert e.token_id == big

    def test_erc20_transfer_is_ignored(self):
        raw = RawLog(CONTRACT, (TRANSFER_T0, topic_addr(ALICE), topic_addr(BOB)), "0x" + word(10**18),
                     5, tx(1), 0)
        assert normalize(raw, "ERC721") == []

    def test_unindexed_legacy_transfer(self):
        raw = RawLog(CONTRACT, (TRANSFER_T0,), "0x" + word(int(ALICE, 16)) + word(int(BOB, 16)) + word(42),
                     5, tx(1), 0)
        [e] = normalize(raw, "ERC721")
        assert (e.from_address, e.to_address, e.token_id) == (ALICE, BOB, 42)

    def test_malformed_topics(self):
        raw = RawLog(CONTRACT, (TRANSFER_T0, topic_addr(ALICE)), "0x", 5, tx(1), 0)
        with pytest.raises(LogDecodeError):
            normalize(raw, "ERC721")

    def test_wrong_kind_gives_nothing(self):
        assert normalize(log_721(ZERO, ALICE, 1, 1), "ERC1155") == []

    def test_addresses_lowercased(self):
        raw = log_721(ZERO, ALICE, 1, 1)
        upper = RawLog(raw.address.upper().replace("0X", "0x"), raw.topics, raw.data_hex,
                       raw.block_number, raw.tx_hash.upper().replace("0X", "0x"), raw.log_index)
        [e] = normalize(upper, "ERC721")
        assert e.contract_address == CONTRACT
        assert e.transaction_hash == raw.tx_hash


# ---------------------------------------------------------------------------
# ERC-1155
# ---------------------------------------------------------------------------

class TestErc1155:
    def test_transfer_single(self):
        [e] = normalize(log_single(ALICE, BOB, 9, 25, 50, log_index=3), "ERC1155")
        assert e.event_kind == "Single"
        assert e.operator == OPERATOR
        assert (e.from_address, e.to_address, e.token_id, e.amount) == (ALICE, BOB, 9, 25)
        assert e.key == (e.transaction_hash, 3, 0)

    def test_truncated_single(self):
        raw = log_single(ALICE, BOB, 9, 25, 50)
        short = RawLog(raw.address, raw.topics, "0x" + word(9), raw.block_number, raw.tx_hash, raw.log_index)
        with pytest.raises(LogDecodeError):
            normalize(short, "ERC1155")

    def test_batch_expands_per_pair(self):
        events = normalize(log_batch(ALICE, BOB, [1, 2], [5, 3], 77, log_index=4), "ERC1155")
        assert len(events) == 2
        assert [(e.token_id, e.amount) for e in events] == [(1, 5), (2, 3)]
        assert {e.transaction_hash for e in events} == {events[0].transaction_hash}
        assert {e.block_number for e in events} == {77}
        assert {e.log_index for e in events} == {4}
        assert [e.expansion_index for e in events] == [0, 1]
        assert all(e.event_kind == "BatchExpanded" for e in events)
        assert len({e.key for e in events}) == 2

    def test_empty_batch(self):
        assert normalize(log_batch(ALICE, BOB, [], [], 1), "ERC1155") == []

    def test_batch_length_mismatch(self):
        raw = log_batch(ALICE, BOB, [1, 2], [5, 3], 1)
        bad = RawLog(raw.address, raw.topics, batch_data([1, 2], [5]), 1, raw.tx_hash, 0)
        with pytest.raises(LogDecodeError):
            normalize(bad, "ERC1155")

    def test_batch_offset_out_of_bounds(self):
        raw = log_batch(ALICE, BOB, [1], [1], 1)
        bad = RawLog(raw.address, raw.topics, "0x" + word(4096) + word(4096) + word(0) + word(0),
                     1, raw.tx_hash, 0)
        with pytest.raises(LogDecodeError):
            normalize(bad, "ERC1155")

    @pytest.mark.parametrize("topic", ["0xzz", "0x1234", topic_addr(ALICE)[:-2] + "gg"])
    def test_non_word_topic_is_decode_error(self, topic):
        raw = log_single(ALICE, BOB, 9, 25, 50)
        bad = RawLog(raw.address, (TRANSFER_SINGLE_T0, topic) + raw.topics[2:], raw.data_hex,
                     raw.block_number, raw.tx_hash, raw.log_index)
        with pytest.raises(LogDecodeError):
            normalize(bad, "ERC1155")

    def test_non_hex_data_is_decode_error(self):
        raw = log_single(ALICE, BOB, 9, 25, 50)
        bad = RawLog(raw.address, raw.topics, "0x" + "zz" * 64, raw.block_number, raw.tx_hash, raw.log_index)
        with pytest.raises(LogDecodeError):
            normalize(bad, "ERC1155")

    def test_timestamp_fallback_flag_carried(self):
        [e] = normalize(log_single(ALICE, BOB, 1, 1, 1, ts=999), "ERC1155", timestamp_fallback=True)
        assert e.timestamp_fallback is True
        assert e.block_timestamp == 999
