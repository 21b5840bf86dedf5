from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any

from .value_types import AbiType, Address, Status, Topic0

_ARRAY_SUFFIX = re.compile(r"\[(\d*)\]$")


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1
    def is_single(self) -> bool: return self.start == self.end

    def split(self) -> tuple[BlockRange, BlockRange]:
        """Midpoint split into [start, mid] and [mid+1, end]."""
        if self.start >= self.end:
            raise ValueError(f"cannot split single-block range {self.start}")
        mid = self.start + (self.end - self.start) // 2
        return BlockRange(self.start, mid), BlockRange(mid + 1, self.end)


@dataclass(slots=True, frozen=True)
class EventInput:
    type: AbiType
    indexed: bool = False
    name: str | None = None

    @property
    def base_type(self) -> str:
        """Element type with every array suffix stripped."""
        t = str(self.type)
        while _ARRAY_SUFFIX.search(t):
            t = _ARRAY_SUFFIX.sub("", t)
        return t

    @property
    def is_array(self) -> bool: return bool(_ARRAY_SUFFIX.search(str(self.type)))
    @property
    def is_tuple(self) -> bool: return str(self.type).startswith("(")

    @property
    def int_bits(self) -> int | None:
        """Bit width for scalar (u)intN types, None otherwise."""
        if self.is_array or self.is_tuple:
            return None
        m = re.fullmatch(r"u?int(\d*)", str(self.type))
        if not m:
            return None
        return int(m.group(1) or 256)

    @property
    def column_tag(self) -> str:
        """Identifier-safe rendering of the type: uint256, address_array, uint8_array3, tuple."""
        t = str(self.type)
        suffixes: list[str] = []
        while (m := _ARRAY_SUFFIX.search(t)):
            suffixes.insert(0, "array" + m.group(1))
            t = t[:m.start()]
        head = "tuple" if t.startswith("(") else t
        return "_".join([head, *suffixes])

    @property
    def is_dynamic(self) -> bool:
        if self.is_tuple or self.is_array:
            return True
        return str(self.type) in ("string", "bytes")


@dataclass(slots=True, frozen=True)
class EventDescriptor:
    name: str
    inputs: tuple[EventInput, ...]
    signature: str          # canonical Name(type,type,...)
    topic0: Topic0

    @property
    def table_name(self) -> str: return f"event_{self.name.lower()}"
    @property
    def key(self) -> str: return self.name.lower()

    def column_names(self) -> list[str]:
        return [f"param_{i}_{inp.column_tag}" for i, inp in enumerate(self.inputs)]


@dataclass(slots=True, frozen=True)
class ContractTarget:
    address: Address
    name: str | None = None
    start_block: int | None = None
    events: tuple[str, ...] | None = None    # event names to index; None means all

    def indexes(self, event: EventDescriptor) -> bool:
        return self.events is None or event.key in {e.lower() for e in self.events}

    @property
    def label(self) -> str: return self.name or str(self.address)


@dataclass(slots=True, frozen=True)
class EventLog:
    address: Address
    topics: tuple[str, ...]
    data_hex: str
    block_number: int
    tx_hash: str
    log_index: int = 0

    @property
    def topic0(self) -> str | None: return self.topics[0] if self.topics else None


@dataclass(slots=True, frozen=True)
class LogRecord:
    contract_address: Address
    transaction_hash: str
    block_number: int
    log_index: int = 0
    args: tuple[Any, ...] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Status = "pending"
    attempts: int = 0
    error: str | None = None
    logs: int = 0
    updated_at: float = 0.0
    contract: str | None = None
    event: str | None = None
