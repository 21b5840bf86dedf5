from __future__ import annotations
import os, json, asyncio
from dataclasses import asdict, fields
from ..ports.storage import ManifestSink
from ..domain.models import ChunkRec

_FIELDS = {f.name for f in fields(ChunkRec)}

class JSONLManifest(ManifestSink):
    """One JSON line per finished (contract, event, range) unit."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    async def append(self, rec: ChunkRec) -> None:
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            with open(self.path, "a") as f:
                f.write(line); f.flush(); os.fsync(f.fileno())

    @staticmethod
    def load(path: str) -> list[ChunkRec]:
        if not os.path.exists(path):
            return []
        out: list[ChunkRec] = []
        with open(path) as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except ValueError as e:
                    raise ValueError(f"{path}:{n}: malformed manifest line: {e}") from e
                out.append(ChunkRec(**{k: v for k, v in raw.items() if k in _FIELDS}))
        return out
