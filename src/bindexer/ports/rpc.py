# bindexer/ports/rpc.py
from __future__ import annotations

from typing import Awaitable, Callable, Protocol, Sequence
from ..domain.models import EventDescriptor, EventLog
from ..domain.value_types import Address

OnLogs = Callable[[Sequence[EventLog]], Awaitable[None]]
OnError = Callable[[BaseException], None]
Unwatch = Callable[[], None]


class ChainClient(Protocol):
    """Port defining the contract for an EVM JSON-RPC logs client."""

    async def current_height(self) -> int:
        """Return the latest block number; raises ChainUnavailableError when unreachable."""

    async def get_logs(
        self,
        address: Address,
        event: EventDescriptor,
        from_block: int,
        to_block: int,
    ) -> list[EventLog]:
        """Return raw logs for [from_block, to_block] inclusive.

        Raises RateLimitedError, ResponseTooLargeError or another RpcError.
        """

    def subscribe(
        self,
        address: Address,
        event: EventDescriptor,
        on_logs: OnLogs,
        on_error: OnError,
        from_block: int | None = None,
    ) -> Unwatch:
        """Deliver matching logs from `from_block` (default: the next new block) until the handle is invoked."""

    async def aclose(self) -> None:
        """Release transport resources."""
