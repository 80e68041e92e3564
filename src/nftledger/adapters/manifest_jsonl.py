from __future__ import annotations
import os, json, asyncio
from dataclasses import asdict
from datetime import datetime, timezone
from ..ports.storage import ManifestSink
from ..domain.models import ChunkRec


def _now_ts_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y_%m_%d_%H%M%S")


def run_manifest_path(target: str, contract: str) -> str:
    """`target` itself for a file path; a fresh per-run file name inside it for a directory."""
    if os.path.isdir(target) or target.endswith(os.sep):
        return os.path.join(target, f"run_{_now_ts_str()}_{contract.lower()}.jsonl")
    return target


def read_manifest(path: str) -> list[ChunkRec]:
    with open(path) as f:
        return [ChunkRec(**json.loads(line)) for line in f if line.strip()]


class JSONLManifest(ManifestSink):
    """One ChunkRec per line, fsynced; appends from concurrent windows are serialized."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    def _write(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line); f.flush(); os.fsync(f.fileno())

    async def append(self, rec: ChunkRec) -> None:
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write, line)
