# bindexer/errors.py
"""
Exception hierarchy.

Structural errors (configuration, invalid ranges, unreachable chain) propagate
to the CLI and end the process; RPC and storage errors are recovered inside
the unit of work that raised them.
"""
from __future__ import annotations

from typing import Any


class BindexerError(Exception):
    """Base exception for the indexer."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BindexerError):
    def __init__(self, message: str, field: str | None = None, suggestions: list[str] | None = None) -> None:
        self.field = field
        self.suggestions = list(suggestions or [])
        super().__init__(message, "CONFIGURATION_ERROR", {"field": field, "suggestions": self.suggestions})

    def describe(self) -> str:
        msg = self.message
        if self.field:
            msg += f" (field: {self.field})"
        if self.suggestions:
            msg += "\nSuggestions:\n" + "\n".join(f"  - {s}" for s in self.suggestions)
        return msg


class InvalidRangeError(BindexerError):
    def __init__(self, from_block: int, to_block: int, reason: str) -> None:
        super().__init__(
            f"invalid block range [{from_block}, {to_block}]: {reason}",
            "INVALID_RANGE",
            {"from_block": from_block, "to_block": to_block},
        )


class ChainUnavailableError(BindexerError):
    """The chain client could not be reached at all."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "CHAIN_UNAVAILABLE", details)


class RpcError(BindexerError):
    """A JSON-RPC call failed; the message carries the provider's description."""

    def __init__(self, message: str, code: int | None = None, status: int | None = None) -> None:
        self.rpc_code = code
        self.status = status
        super().__init__(message, "RPC_ERROR", {"rpc_code": code, "http_status": status})


class RateLimitedError(RpcError):
    pass


class ResponseTooLargeError(RpcError):
    pass


class DecodeError(BindexerError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, "DECODE_ERROR", details)


class StorageError(BindexerError):
    def __init__(self, message: str, code: str = "STORAGE_ERROR", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code, details)


class InvalidIdentifierError(StorageError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"not a safe identifier: {identifier!r}", "INVALID_IDENTIFIER", {"identifier": identifier})


class SchemaDriftError(StorageError):
    def __init__(self, table: str, missing: set[str], unexpected: set[str]) -> None:
        super().__init__(
            f"table {table} does not match the event definition "
            f"(missing={sorted(missing)}, unexpected={sorted(unexpected)})",
            "SCHEMA_DRIFT",
            {"table": table, "missing": sorted(missing), "unexpected": sorted(unexpected)},
        )


class InvalidQueryError(StorageError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "INVALID_QUERY")
