from __future__ import annotations

from typing import Protocol, Sequence
from ..domain.models import BlockHeader, RawLog
from ..domain.value_types import Address


class RPCClient(Protocol):
    """Port defining the contract for an Ethereum JSON-RPC client.

    Implementations raise the typed errors of ``nftledger.domain.errors``
    (TransientRPCError, RateLimitedError, RangeTooLargeError); retrying is the
    fetcher's job, not the client's.
    """

    async def get_logs(
        self,
        address: Address,
        topic0s: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """Return typed logs for [from_block, to_block] inclusive, any of `topic0s`."""

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def get_block(self, number: int) -> BlockHeader:
        """Return number/timestamp/hash of a block."""
