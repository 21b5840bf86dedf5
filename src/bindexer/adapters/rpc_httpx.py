from __future__ import annotations
import asyncio, httpx
from typing import Any
from ..domain.models import EventDescriptor, EventLog
from ..domain.value_types import Address
from ..errors import ChainUnavailableError, RateLimitedError, ResponseTooLargeError, RpcError
from ..log import get_logger
from ..ports.rpc import ChainClient, OnError, OnLogs, Unwatch

logger = get_logger(__name__)

_TOO_LARGE_HINTS = ("log response size exceeded", "too many logs", "query returned more than",
                    "response size", "exceed maximum block range", "block range is too wide")
_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "429", "exceeded the quota")

def _to_hex_block(n: int) -> str: return hex(int(n))
def _is_topic_hash(x: str) -> bool: return isinstance(x, str) and x.startswith("0x") and len(x)==66
def _hex_int(x: Any, default: int = 0) -> int:
    if x is None: return default
    return int(x, 16) if isinstance(x, str) else int(x)

def rpc_error_from(code: int | None, msg: str, status: int | None = None) -> RpcError:
    """Map a provider error to the failure class the driver reacts to."""
    low = (msg or "").lower()
    if status == 429 or any(h in low for h in _RATE_LIMIT_HINTS):
        return RateLimitedError(msg or "rate limited", code=code, status=status)
    if status == 413 or any(h in low for h in _TOO_LARGE_HINTS):
        return ResponseTooLargeError(msg, code=code, status=status)
    return RpcError(f"RPC error code={code} message={msg}", code=code, status=status)

def _parse_log(rl: dict[str, Any]) -> EventLog:
    return EventLog(
        address=Address(rl["address"]),
        topics=tuple(t.lower() for t in rl.get("topics", [])),
        data_hex=rl.get("data") or "0x",
        block_number=_hex_int(rl.get("blockNumber")),
        tx_hash=(rl.get("transactionHash") or "").lower(),
        log_index=_hex_int(rl.get("logIndex")),
    )

class HttpxRPC(ChainClient):
    def __init__(self, rpc_url: str, timeout_s: int = 20, max_conn: int = 64, poll_interval: float = 4.0,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.rpc_url = rpc_url
        self.poll_interval = poll_interval
        self.client = httpx.AsyncClient(
            http2=True,
            transport=transport,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn//2),
        )
        self._id = 0

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc":"2.0","id":self._id,"method":method,"params":params}
        try:
            r = await self.client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise ChainUnavailableError(f"{method}: cannot reach {self.rpc_url}: {e}") from e
        if r.status_code >= 400:
            raise rpc_error_from(None, r.text[:200] or r.reason_phrase, status=r.status_code)
        data = r.json()
        if "error" in data:
            err = data["error"]
            if isinstance(err, dict):
                raise rpc_error_from(err.get("code"), str(err.get("message", "")))
            raise rpc_error_from(None, str(err))
        return data.get("result")

    async def current_height(self) -> int:
        return _hex_int(await self._call("eth_blockNumber", []))

    async def get_logs(self, address: Address, event: EventDescriptor, from_block: int, to_block: int) -> list[EventLog]:
        t0 = str(event.topic0).lower()
        if not _is_topic_hash(t0):
            raise ValueError(f"Invalid topic0: {t0}")
        res = await self._call("eth_getLogs", [{
            "address": str(address),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": [t0],
        }])
        return [_parse_log(rl) for rl in (res or [])]

    def subscribe(self, address: Address, event: EventDescriptor, on_logs: OnLogs, on_error: OnError,
                  from_block: int | None = None) -> Unwatch:
        stopped = False

        async def poll() -> None:
            last: int | None = None if from_block is None else from_block - 1
            while not stopped:
                try:
                    head = await self.current_height()
                    if last is None:
                        last = head
                    elif head > last:
                        logs = await self.get_logs(address, event, last + 1, head)
                        logger.debug("watch_poll", event_name=event.name, from_block=last + 1, to_block=head, logs=len(logs))
                        last = head
                        if logs and not stopped:
                            await on_logs(logs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not stopped:
                        on_error(e)
                await asyncio.sleep(self.poll_interval)

        task = asyncio.get_running_loop().create_task(poll(), name=f"watch:{event.name}:{address}")

        def unwatch() -> None:
            nonlocal stopped
            stopped = True
            task.cancel()
        return unwatch

    async def aclose(self) -> None:
        await self.client.aclose()
