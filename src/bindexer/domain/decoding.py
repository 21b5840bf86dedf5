from __future__ import annotations

import re
from typing import Any, Sequence

from eth_abi import decode as abi_decode
from eth_utils import keccak, to_checksum_address

from bindexer.domain.models import EventDescriptor, EventInput, EventLog, LogRecord
from bindexer.domain.value_types import AbiType, Address, Topic0
from bindexer.errors import DecodeError

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SCALAR = re.compile(r"^(address|bool|string|bytes([1-9]|[12][0-9]|3[0-2])?|u?int(8|16|24|32|40|48|56|64|72|80|88|96|104|112|120|128|136|144|152|160|168|176|184|192|200|208|216|224|232|240|248|256)?)$")


# ---------- signature parsing --------------------------------------------------

def _split_top_level(s: str) -> list[str]:
    """Split on commas that are not nested inside parentheses."""
    parts: list[str] = []
    depth = 0
    cur: list[str] = []
    for ch in s:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced parentheses in {s!r}")
        if ch == "," and depth == 0:
            parts.append("".join(cur)); cur = []
            continue
        cur.append(ch)
    if depth != 0:
        raise ValueError(f"unbalanced parentheses in {s!r}")
    tail = "".join(cur)
    if tail.strip() or parts:
        parts.append(tail)
    return parts


def _matching_paren(s: str, start: int) -> int:
    depth = 0
    for i in range(start, len(s)):
        if s[i] == "(":
            depth += 1
        elif s[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    raise ValueError(f"unbalanced parentheses in {s!r}")


def _canonical_scalar(t: str) -> str:
    m = re.match(r"^([a-z0-9]+)((?:\[\d*\])*)$", t)
    if not m:
        raise ValueError(f"unsupported ABI type {t!r}")
    head, suffix = m.group(1), m.group(2)
    if head == "uint": head = "uint256"
    elif head == "int": head = "int256"
    if not _SCALAR.match(head):
        raise ValueError(f"unsupported ABI type {t!r}")
    return head + suffix


def _parse_param(text: str) -> EventInput:
    text = text.strip()
    if not text:
        raise ValueError("empty parameter")
    if text.startswith("tuple("):
        text = text[len("tuple"):]
    if text.startswith("("):
        close = _matching_paren(text, 0)
        inner = [_parse_param(p).type for p in _split_top_level(text[1:close])]
        rest = text[close + 1:]
        m = re.match(r"^((?:\[\d*\])*)(.*)$", rest, re.S)
        suffix, rest = m.group(1), m.group(2)
        type_ = f"({','.join(inner)}){suffix}"
        tokens = rest.split()
    else:
        tokens = text.split()
        type_ = _canonical_scalar(tokens[0])
        tokens = tokens[1:]
    indexed = False
    name: str | None = None
    for tok in tokens:
        if tok == "indexed":
            indexed = True
        elif name is None and IDENTIFIER.match(tok):
            name = tok
        else:
            raise ValueError(f"unexpected token {tok!r} in parameter {text!r}")
    return EventInput(type=AbiType(type_), indexed=indexed, name=name)


def parse_event_signature(signature: str) -> EventDescriptor:
    """
    Parse `Transfer(address,address,uint256)` or the human-readable form
    `Transfer(address indexed from, address indexed to, uint256 value)`.
    An optional leading `event ` keyword is accepted.
    """
    sig = signature.strip()
    if sig.startswith("event "):
        sig = sig[len("event "):].strip()
    open_ = sig.find("(")
    if open_ <= 0 or not sig.endswith(")"):
        raise ValueError(f"event signature must look like Name(type,...): {signature!r}")
    name = sig[:open_].strip()
    if not IDENTIFIER.match(name):
        raise ValueError(f"invalid event name {name!r}")
    if _matching_paren(sig, open_) != len(sig) - 1:
        raise ValueError(f"trailing characters after parameter list: {signature!r}")
    inputs = tuple(_parse_param(p) for p in _split_top_level(sig[open_ + 1:-1]))
    canonical = f"{name}({','.join(str(i.type) for i in inputs)})"
    return EventDescriptor(
        name=name,
        inputs=inputs,
        signature=canonical,
        topic0=Topic0("0x" + keccak(text=canonical).hex()),
    )


# ---------- log decoding ---------------------------------------------------------

def _hex_to_bytes(s: str) -> bytes:
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    try:
        return bytes.fromhex(h)
    except ValueError as e:
        raise DecodeError(f"invalid hex payload: {e}") from e


def _normalize(value: Any, inp_type: str) -> Any:
    """Checksum addresses (also inside arrays/tuples); everything else as decoded."""
    if isinstance(value, (list, tuple)):
        if inp_type.startswith("(") and not re.search(r"\]$", inp_type):
            comps = _split_top_level(inp_type[1:-1])
            return tuple(_normalize(v, t) for v, t in zip(value, comps))
        elem = re.sub(r"\[\d*\]$", "", inp_type)
        return [_normalize(v, elem) for v in value]
    if inp_type == "address" and isinstance(value, str):
        return to_checksum_address(value)
    return value


def _indexed_flags(event: EventDescriptor, n_topics: int) -> list[bool]:
    declared = [i.indexed for i in event.inputs]
    if any(declared) or n_topics == 0:
        return declared
    # signature omitted `indexed`: the extra topics belong to the leading inputs
    if n_topics > len(event.inputs):
        raise DecodeError(f"{n_topics} indexed topics but {event.name} has {len(event.inputs)} inputs")
    return [i < n_topics for i in range(len(event.inputs))]


def _decode_topic(topic: str, inp: EventInput) -> Any:
    raw = _hex_to_bytes(topic)
    if len(raw) != 32:
        raise DecodeError(f"topic must be 32 bytes, got {len(raw)}")
    if inp.is_dynamic:
        # dynamic indexed values are only available as their keccak hash
        return "0x" + raw.hex()
    return _normalize(abi_decode([str(inp.type)], raw)[0], str(inp.type))


def decode_log(raw: EventLog, event: EventDescriptor) -> LogRecord:
    """Decode one raw log into a LogRecord whose args align with `event.inputs`."""
    if not raw.tx_hash:
        raise DecodeError("log is missing transactionHash")
    if raw.block_number is None:
        raise DecodeError("log is missing blockNumber", {"tx_hash": raw.tx_hash})
    topics = raw.topics
    if not topics or topics[0].lower() != event.topic0.lower():
        raise DecodeError(f"log topic0 does not match {event.signature}", {"tx_hash": raw.tx_hash})

    flags = _indexed_flags(event, len(topics) - 1)
    if sum(flags) != len(topics) - 1:
        raise DecodeError(
            f"{event.name} expects {sum(flags)} indexed topics, log has {len(topics) - 1}",
            {"tx_hash": raw.tx_hash, "log_index": raw.log_index},
        )

    data_inputs = [inp for inp, idx in zip(event.inputs, flags) if not idx]
    data = _hex_to_bytes(raw.data_hex or "0x")
    try:
        decoded: Sequence[Any] = abi_decode([str(i.type) for i in data_inputs], data) if data_inputs else ()
    except Exception as e:
        raise DecodeError(f"cannot decode {event.name} data: {e}", {"tx_hash": raw.tx_hash}) from e

    args: list[Any] = []
    topic_it = iter(topics[1:])
    data_it = iter(decoded)
    for inp, idx in zip(event.inputs, flags):
        if idx:
            args.append(_decode_topic(next(topic_it), inp))
        else:
            args.append(_normalize(next(data_it), str(inp.type)))

    return LogRecord(
        contract_address=Address(to_checksum_address(raw.address)),
        transaction_hash=raw.tx_hash.lower(),
        block_number=int(raw.block_number),
        log_index=int(raw.log_index or 0),
        args=tuple(args),
    )
