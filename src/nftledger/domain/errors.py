from __future__ import annotations
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .models import UnresolvedRange


class NftLedgerError(Exception):
    """Base class for every error raised by nftledger."""


# ---------- RPC taxonomy ------------------------------------------------------

class RPCError(NftLedgerError):
    def __init__(self, message: str, *, code: int | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class TransientRPCError(RPCError):
    """Timeout, connection reset, node busy: retry with backoff."""


class RateLimitedError(RPCError):
    """Provider throttled us: wait the longer rate-limit delay, then retry."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kw) -> None:
        super().__init__(message, **kw)
        self.retry_after = retry_after


class RangeTooLargeError(RPCError):
    """Provider rejected the query by result size or block span: bisect, never retry as-is."""


# ---------- ledger / state ----------------------------------------------------

class LogDecodeError(NftLedgerError):
    """Raw log matched a transfer topic but its topics/data are malformed."""


class DataIntegrityError(NftLedgerError):
    """Ledger totals disagree with the materialized state, or a key collided unexpectedly."""


class PartialRangeFailure(NftLedgerError):
    def __init__(self, contract_address: str, unresolved: Sequence["UnresolvedRange"]) -> None:
        self.contract_address = contract_address
        self.unresolved = list(unresolved)
        spans = ", ".join(str(u.range) for u in self.unresolved)
        super().__init__(f"{contract_address}: {len(self.unresolved)} unresolved range(s): {spans}")


class SchemaVersionError(NftLedgerError):
    """Store schema is newer than this code knows about."""


# ---------- classification ----------------------------------------------------

_TOO_LARGE_MARKERS = (
    "response size exceeded",
    "query returned more than",
    "block range",
    "too many results",
    "limit the query",
    "range too large",
    "response too large",
    "exceed maximum block range",
)
_RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "request limit",
    "compute units",
    "capacity",
    "throttl",
)

def classify_rpc_error(message: str, *, status_code: int | None = None, code: int | None = None,
                       retry_after: float | None = None) -> RPCError:
    """Map a provider failure onto the retry taxonomy by message first, HTTP status second."""
    msg = (message or "").lower()
    if any(m in msg for m in _TOO_LARGE_MARKERS):
        return RangeTooLargeError(message, code=code, status_code=status_code)
    if status_code == 429 or any(m in msg for m in _RATE_LIMIT_MARKERS):
        return RateLimitedError(message, code=code, status_code=status_code, retry_after=retry_after)
    return TransientRPCError(message, code=code, status_code=status_code)
