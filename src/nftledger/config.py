from __future__ import annotations

import os
from dataclasses import dataclass, field, replace

from dotenv import find_dotenv, load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///nftledger.db"


@dataclass(slots=True, frozen=True)
class FetchConfig:
    max_chunk: int = 2_000          # blocks per eth_getLogs (Alchemy caps at 2k)
    concurrency: int = 5            # calls in flight per window
    batch_delay: float = 0.2        # seconds between windows
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 10.0
    rate_limit_delay: float = 5.0
    min_split_span: int = 1         # ranges this small are not bisected further
    timeout_s: int = 20

    def __post_init__(self) -> None:
        if self.max_chunk < 1 or self.concurrency < 1 or self.max_attempts < 1:
            raise ValueError("max_chunk, concurrency and max_attempts must be >= 1")
        if self.min_split_span < 1:
            raise ValueError("min_split_span must be >= 1")


@dataclass(slots=True, frozen=True)
class Settings:
    rpc_url: str | None = None
    database_url: str = DEFAULT_DATABASE_URL
    fetch: FetchConfig = field(default_factory=FetchConfig)
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        """Read NFTLEDGER_* variables (after loading a .env file if present)."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        env = os.environ
        d = FetchConfig()
        fetch = FetchConfig(
            max_chunk=int(env.get("NFTLEDGER_MAX_CHUNK", d.max_chunk)),
            concurrency=int(env.get("NFTLEDGER_CONCURRENCY", d.concurrency)),
            batch_delay=float(env.get("NFTLEDGER_BATCH_DELAY", d.batch_delay)),
            max_attempts=int(env.get("NFTLEDGER_MAX_ATTEMPTS", d.max_attempts)),
            backoff_base=float(env.get("NFTLEDGER_BACKOFF_BASE", d.backoff_base)),
            backoff_max=float(env.get("NFTLEDGER_BACKOFF_MAX", d.backoff_max)),
            rate_limit_delay=float(env.get("NFTLEDGER_RATE_LIMIT_DELAY", d.rate_limit_delay)),
            min_split_span=int(env.get("NFTLEDGER_MIN_SPLIT_SPAN", d.min_split_span)),
            timeout_s=int(env.get("NFTLEDGER_TIMEOUT_S", d.timeout_s)),
        )
        return cls(
            rpc_url=env.get("NFTLEDGER_RPC_URL") or None,
            database_url=env.get("NFTLEDGER_DATABASE_URL", DEFAULT_DATABASE_URL),
            fetch=fetch,
            log_level=env.get("NFTLEDGER_LOG_LEVEL", "INFO").upper(),
            log_json=env.get("NFTLEDGER_LOG_JSON", "").lower() in ("1", "true", "yes"),
        )

    def with_overrides(self, **kw) -> "Settings":
        """Return a copy with the non-None keyword values applied (CLI flags win over env)."""
        fetch_kw = {k: v for k, v in kw.pop("fetch", {}).items() if v is not None}
        top = {k: v for k, v in kw.items() if v is not None}
        fetch = replace(self.fetch, **fetch_kw) if fetch_kw else self.fetch
        return replace(self, fetch=fetch, **top)
