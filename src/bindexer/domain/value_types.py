from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, checksummed
Topic0  = NewType("Topic0", str)    # 66-char 0x-hash
AbiType = NewType("AbiType", str)   # canonical ABI type, e.g. "uint256", "address[]", "(uint256,bool)"
Status  = Literal["pending", "done", "failed"]
FailureKind = Literal["rate_limited", "too_many_logs", "other"]
