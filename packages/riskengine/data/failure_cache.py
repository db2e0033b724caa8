"""Per-ticker memo of recent provider failures.

A ticker that failed recently is skipped until its failure expires, with
the retry delay depending on the kind of failure.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class FailureType(str, Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"


FAILURE_TTL_HOURS: Dict[FailureType, int] = {
    FailureType.NOT_FOUND: 24,
    FailureType.RATE_LIMITED: 1,
    FailureType.API_ERROR: 6,
}


@dataclass(frozen=True)
class FailureInfo:
    failed_at: float
    failure_type: FailureType
    ttl_hours: int
    reason: str = ""

    @property
    def expires_at(self) -> float:
        return self.failed_at + self.ttl_hours * 3600


class FailureCache:
    def __init__(self, now_fn: Optional[Callable[[], float]] = None) -> None:
        self._data: Dict[str, FailureInfo] = {}
        self._now_fn = now_fn or time.time

    def __len__(self) -> int:
        return len(self._data)

    def get(self, ticker: str) -> Optional[FailureInfo]:
        """Active failure for *ticker*, dropping it once expired."""
        info = self._data.get(ticker.upper())
        if info is None:
            return None
        if info.expires_at <= self._now_fn():
            self._data.pop(ticker.upper(), None)
            return None
        return info

    def should_skip(self, ticker: str) -> bool:
        return self.get(ticker) is not None

    def record_failure(self, ticker: str, failure_type: FailureType, reason: str = "") -> FailureInfo:
        info = FailureInfo(
            failed_at=self._now_fn(),
            failure_type=failure_type,
            ttl_hours=FAILURE_TTL_HOURS[failure_type],
            reason=reason,
        )
        self._data[ticker.upper()] = info
        logger.info(
            "ticker_failure_recorded",
            ticker=ticker,
            failure_type=failure_type.value,
            ttl_hours=info.ttl_hours,
        )
        return info

    def clear(self, ticker: str) -> None:
        self._data.pop(ticker.upper(), None)

    def cleanup_expired(self) -> int:
        now = self._now_fn()
        expired = [t for t, info in self._data.items() if info.expires_at <= now]
        for t in expired:
            del self._data[t]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        counts = {ft.value: 0 for ft in FailureType}
        for info in self._data.values():
            counts[info.failure_type.value] += 1
        counts["total"] = len(self._data)
        return counts
