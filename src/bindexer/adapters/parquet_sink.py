from __future__ import annotations
import json, os, pyarrow as pa, pyarrow.parquet as pq
from typing import Any, Iterable

from ..ports.storage import EventStore

def _cell(v: Any) -> Any:
    if isinstance(v, (list, tuple, dict)):
        return json.dumps(v, separators=(",", ":"))
    if isinstance(v, memoryview):
        return bytes(v)
    return v

def rows_to_table(rows: Iterable[dict[str, Any]]) -> pa.Table:
    rows = list(rows)
    if not rows:
        return pa.table({})
    names = list(rows[0].keys())
    return pa.Table.from_arrays(
        [pa.array([_cell(r.get(n)) for r in rows]) for n in names],
        names=names,
    )

class ParquetTableExporter:
    """
    Writes one stored event table to a Parquet file, in insertion order.
    """
    def __init__(self, store: EventStore, page_size: int = 10_000, codec: str = "zstd") -> None:
        self.store = store
        self.page_size = page_size
        self.codec = codec

    def _rows(self, event_name: str) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = self.store.query(event_name, limit=self.page_size, offset=offset,
                                    order_by="id", order_direction="ASC")
            out.extend(page)
            if len(page) < self.page_size:
                return out
            offset += len(page)

    def export(self, event_name: str, path: str) -> int:
        rows = self._rows(event_name)
        table = rows_to_table(rows)
        table = table.sort_by([("block_number", "ascending"), ("log_index", "ascending")]) if rows else table
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp = path + ".tmp"
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, path)
        return table.num_rows
