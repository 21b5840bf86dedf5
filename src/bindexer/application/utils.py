import os, re
from datetime import datetime, timezone


def _now_ts_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y_%m_%d_%H%M%S")


def manifest_file(path: str, label: str) -> str:
    """`path` itself, or a fresh per-run file inside it when `path` is a directory."""
    if path.endswith(os.sep) or os.path.isdir(path):
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", label).strip("-") or "run"
        return os.path.join(path, f"run_{_now_ts_str()}_{slug}.jsonl")
    return path
