"""
Relational layout synthesized from an event definition.

One table per event name (`event_<lower(name)>`) with five fixed columns, one
`param_<i>_<type>` column per input, two lookup indexes and the unique
`(transaction_hash, log_index)` idempotence key.
"""
from __future__ import annotations

import json
from typing import Any

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Index, Integer, LargeBinary, MetaData, Table, Text, func,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.schema import CreateIndex, CreateTable
from sqlalchemy.types import TypeEngine

from bindexer.domain.decoding import IDENTIFIER
from bindexer.domain.models import EventDescriptor, EventInput
from bindexer.errors import InvalidIdentifierError

BASE_COLUMNS = ("id", "contract_address", "transaction_hash", "block_number", "log_index", "timestamp")
AUTO_COLUMNS = frozenset({"id", "timestamp"})

# JSON numbers above this lose precision in most consumers
_MAX_SAFE_INT = 2**53 - 1


def native_int(inp: EventInput) -> bool:
    """True when every value of the type fits a signed 64-bit column."""
    bits = inp.int_bits
    if bits is None:
        return False
    return bits < 64 or (bits == 64 and str(inp.type).startswith("int"))


def column_type(inp: EventInput) -> TypeEngine:
    if inp.is_array or inp.is_tuple:
        return Text()
    if inp.int_bits is not None:
        return BigInteger() if native_int(inp) else Text()
    t = str(inp.type)
    if t == "bool":
        return Boolean()
    if t.startswith("bytes"):
        return LargeBinary()
    return Text()  # address, string


def check_identifier(name: str) -> str:
    if not IDENTIFIER.match(name):
        raise InvalidIdentifierError(name)
    return name


def synthesize(event: EventDescriptor, metadata: MetaData) -> Table:
    """Return the Table for `event`, registering it on `metadata` once."""
    check_identifier(event.name)
    tname = event.table_name
    if tname in metadata.tables:
        return metadata.tables[tname]
    params = [Column(col, column_type(inp)) for col, inp in zip(event.column_names(), event.inputs)]
    return Table(
        tname, metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("contract_address", Text, nullable=False),
        Column("transaction_hash", Text, nullable=False),
        Column("block_number", BigInteger, nullable=False),
        Column("log_index", Integer, nullable=False),
        Column("timestamp", DateTime, server_default=func.current_timestamp()),
        *params,
        Index(f"idx_{tname}_contract", "contract_address"),
        Index(f"idx_{tname}_block", "block_number"),
        Index(f"idx_{tname}_unique", "transaction_hash", "log_index", unique=True),
        sqlite_autoincrement=True,
    )


def ddl_statements(table: Table, dialect: Dialect) -> list[str]:
    out = [str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)).strip()]
    for idx in sorted(table.indexes, key=lambda i: i.name or ""):
        out.append(str(CreateIndex(idx, if_not_exists=True).compile(dialect=dialect)).strip())
    return out


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) > _MAX_SAFE_INT:
        return str(value)
    return value


def to_column_value(value: Any, inp: EventInput) -> Any:
    """Storage form of one decoded argument for its synthesized column."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(_jsonable(value), separators=(",", ":"))
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value if native_int(inp) else str(value)
    if str(inp.type).startswith("bytes") and not inp.is_array:
        if isinstance(value, str):
            h = value[2:] if value[:2].lower() == "0x" else value
            return bytes.fromhex(h)
        return bytes(value)
    return value
