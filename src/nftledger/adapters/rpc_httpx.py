from __future__ import annotations
import itertools
from typing import Any, Sequence

import httpx

from ..domain.errors import TransientRPCError, classify_rpc_error
from ..domain.models import BlockHeader, RawLog
from ..domain.value_types import Address, TxHash
from ..ports.rpc import RPCClient

def _to_hex_block(n: int) -> str: return hex(int(n))
def _is_topic_hash(x: str) -> bool: return isinstance(x, str) and x.startswith("0x") and len(x)==66
def _hex_int(v: Any) -> int | None:
    if v is None: return None
    if isinstance(v, int): return v
    s = str(v)
    return int(s, 16) if s.startswith("0x") else int(s)

def _build_topics_param(topic0s: Sequence[str]) -> list[list[str]]:
    t0s = [str(t).strip().lower() for t in topic0s]
    if not t0s or not all(_is_topic_hash(x) for x in t0s):
        raise ValueError(f"Invalid topic0(s): {t0s}")
    return [t0s]

def _retry_after(r: httpx.Response) -> float | None:
    ra = r.headers.get("Retry-After")
    return float(ra) if ra and ra.isdigit() else None

def _parse_log(rl: dict) -> RawLog:
    return RawLog(
        address=Address(rl["address"].lower()),
        topics=tuple((t if isinstance(t, str) else t.decode()).lower() for t in rl.get("topics", [])),
        data_hex=str(rl.get("data") or "0x"),
        block_number=int(rl["blockNumber"], 16),
        tx_hash=TxHash((rl.get("transactionHash") or "").lower()),
        log_index=int(rl["logIndex"], 16),
        block_timestamp=_hex_int(rl.get("blockTimestamp")),
    )


class HttpxRPC(RPCClient):
    """JSON-RPC 2.0 over httpx; every failure surfaces as a classified RPCError."""

    def __init__(self, rpc_url: str, timeout_s: int = 20, max_conn: int = 64, *,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
            transport=transport,
        )

    async def _post(self, method: str, params: list) -> Any:
        payload = {"jsonrpc":"2.0","id":next(self._ids),"method":method,"params":params}
        try:
            r = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientRPCError(f"{method} timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise TransientRPCError(f"{method} transport error: {e!r}") from e

        try:
            data = r.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error") is not None:
            err = data["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise classify_rpc_error(f"{method}: {msg}", code=code, status_code=r.status_code,
                                     retry_after=_retry_after(r))
        if r.status_code >= 400 or not isinstance(data, dict):
            raise classify_rpc_error(f"{method}: HTTP {r.status_code} {r.text[:200]}",
                                     status_code=r.status_code, retry_after=_retry_after(r))
        return data.get("result")

    async def latest_block(self) -> int:
        return int(await self._post("eth_blockNumber", []), 16)

    async def get_block(self, number: int) -> BlockHeader:
        res = await self._post("eth_getBlockByNumber", [_to_hex_block(number), False])
        if not res:
            # node behind the one that served the logs
            raise TransientRPCError(f"eth_getBlockByNumber: block {number} not found")
        return BlockHeader(number=int(res["number"], 16), timestamp=int(res["timestamp"], 16), hash=res.get("hash") or "")

    async def get_logs(self, address: Address, topic0s: Sequence[str], from_block: int, to_block: int) -> list[RawLog]:
        res = await self._post("eth_getLogs", [{
            "address": str(address).lower(),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": _build_topics_param(topic0s),
        }])
        return [_parse_log(rl) for rl in (res or []) if not rl.get("removed")]

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpxRPC":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
