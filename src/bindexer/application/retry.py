from __future__ import annotations
from dataclasses import dataclass
from typing import Literal

from ..domain.value_types import FailureKind
from ..errors import RateLimitedError, ResponseTooLargeError

Strategy = Literal["linear", "exponential", "fixed"]

RATE_LIMITED: FailureKind = "rate_limited"
TOO_MANY_LOGS: FailureKind = "too_many_logs"
OTHER: FailureKind = "other"

_RATE_LIMIT_TEXT = ("rate limit", "429")
_TOO_MANY_LOGS_TEXT = ("log response size exceeded", "too many logs", "query returned more than")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    strategy: Strategy = "linear"

    def _cap(self, ms: float) -> float:
        return min(float(ms), float(self.max_delay_ms)) / 1000.0

    def rate_limit_delay(self, attempt: int) -> float:
        """Seconds to wait after the `attempt`-th rate-limited failure."""
        return self._cap(self.base_delay_ms * 2 ** attempt)

    def error_delay(self, attempt: int) -> float:
        if self.strategy == "exponential":
            return self._cap(self.base_delay_ms * 2 ** attempt)
        if self.strategy == "fixed":
            return self._cap(self.base_delay_ms)
        return self._cap(self.base_delay_ms * attempt)

    def should_retry(self, attempt: int) -> bool: return attempt <= self.max_retries

    @staticmethod
    def classify(exc: BaseException) -> FailureKind:
        if isinstance(exc, RateLimitedError):
            return RATE_LIMITED
        if isinstance(exc, ResponseTooLargeError):
            return TOO_MANY_LOGS
        text = str(exc).lower()
        if any(t in text for t in _RATE_LIMIT_TEXT):
            return RATE_LIMITED
        if any(t in text for t in _TOO_MANY_LOGS_TEXT):
            return TOO_MANY_LOGS
        return OTHER
