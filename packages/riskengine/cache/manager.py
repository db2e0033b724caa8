"""In-memory coherency manager for risk-derived results.

Entries move through fresh -> stale -> calculating -> fresh | error.
Writes for one key are linearized by a per-key asyncio.Lock and a single
in-flight task that concurrent callers join.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..errors import CacheComputeTimeout
from .entries import (
    DEFAULT_TTL_SECONDS,
    ERROR_RETRY_SECONDS,
    CacheEntry,
    CacheKey,
    CacheStatus,
    MetricFamily,
)

logger = structlog.get_logger(__name__)

ComputeFn = Callable[[], Awaitable[Any]]


class RiskCacheManager:
    def __init__(
        self,
        now_fn: Optional[Callable[[], float]] = None,
        timeout_seconds: float = 60.0,
        ttl_overrides: Optional[Dict[MetricFamily, float]] = None,
        error_retry_seconds: float = ERROR_RETRY_SECONDS,
    ) -> None:
        self._now_fn = now_fn or time.time
        self._timeout = timeout_seconds
        self._ttls = dict(DEFAULT_TTL_SECONDS)
        self._ttls.update(ttl_overrides or {})
        self._error_retry = error_retry_seconds
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}
        self._inflight: Dict[CacheKey, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def ttl_for(self, family: MetricFamily) -> float:
        return self._ttls[family]

    def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_calculating(self, key: CacheKey) -> bool:
        return key in self._inflight

    def _servable(self, entry: Optional[CacheEntry], now: float) -> bool:
        if entry is None or not entry.has_payload:
            return False
        if entry.status == CacheStatus.FRESH:
            return entry.expires_at is not None and entry.expires_at > now
        # Failed recompute: keep serving the last good payload until the retry window ends
        if entry.status == CacheStatus.ERROR:
            return entry.expires_at is not None and entry.expires_at > now
        return False

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------

    async def get_or_compute(
        self,
        key: CacheKey,
        compute: ComputeFn,
        force_refresh: bool = False,
        serve_stale_on_error: bool = True,
    ) -> Any:
        """Return the cached payload for *key*, computing it if needed.

        Concurrent callers for the same key share one computation.
        ``force_refresh`` skips the freshness check but still joins an
        in-flight computation rather than starting a second one.

        Raises:
            CacheComputeTimeout: The computation exceeded the timeout; the
                entry is stale again
            Exception: Whatever *compute* raised, when no earlier payload
                can be served
        """
        if not force_refresh:
            entry = self._entries.get(key)
            if self._servable(entry, self._now_fn()):
                return entry.payload

        task = await self._ensure_task(key, compute)
        try:
            return await asyncio.shield(task)
        except CacheComputeTimeout:
            raise
        except Exception as e:
            entry = self._entries.get(key)
            if serve_stale_on_error and entry is not None and entry.has_payload:
                logger.warning(
                    "cache_serving_stale_after_error",
                    key=str(key),
                    error=str(e),
                    calculated_at=entry.calculated_at,
                )
                return entry.payload
            raise

    async def refresh(self, key: CacheKey, compute: ComputeFn) -> Any:
        """Recompute *key* now and raise on failure (no stale fallback)."""
        return await self.get_or_compute(key, compute, force_refresh=True, serve_stale_on_error=False)

    async def _ensure_task(self, key: CacheKey, compute: ComputeFn) -> asyncio.Task:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            task = self._inflight.get(key)
            if task is not None:
                logger.debug("cache_join_inflight", key=str(key))
                return task

            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(key=key, status=CacheStatus.STALE)
                self._entries[key] = entry
            entry.generation += 1
            entry.transition(CacheStatus.CALCULATING)

            task = asyncio.ensure_future(self._run(key, compute, entry, entry.generation))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
            return task

    def _release(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the exception so an unjoined failure is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _run(
        self, key: CacheKey, compute: ComputeFn, owner: CacheEntry, generation: int
    ) -> Any:
        started = self._now_fn()
        try:
            payload = await asyncio.wait_for(compute(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._revert_to_stale(key, owner, generation, f"timed out after {self._timeout}s")
            logger.warning("cache_compute_timeout", key=str(key), timeout_seconds=self._timeout)
            raise CacheComputeTimeout(str(key), self._timeout)
        except asyncio.CancelledError:
            self._revert_to_stale(key, owner, generation, "cancelled")
            raise
        except Exception as e:
            self._record_error(key, owner, generation, e)
            raise

        self._store(key, owner, generation, payload, started)
        return payload

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _current(
        self, key: CacheKey, owner: CacheEntry, generation: int, outcome: str
    ) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not owner or entry.generation != generation:
            logger.warning(
                "cache_late_result_discarded",
                key=str(key),
                outcome=outcome,
                generation=generation,
                current_generation=entry.generation if entry else None,
            )
            return None
        return entry

    def _store(
        self, key: CacheKey, owner: CacheEntry, generation: int, payload: Any, started: float
    ) -> bool:
        entry = self._current(key, owner, generation, "success")
        if entry is None:
            return False

        now = self._now_fn()
        if entry.calculated_at is not None and now <= entry.calculated_at:
            now = entry.calculated_at + 1e-6

        entry.payload = payload
        entry.calculated_at = now
        entry.expires_at = now + self._ttls[key.metric_family]
        entry.last_error = None
        entry.retry_count = 0
        if entry.pending_invalidation:
            entry.pending_invalidation = False
            entry.transition(CacheStatus.STALE)
        else:
            entry.transition(CacheStatus.FRESH)

        logger.info(
            "cache_entry_stored",
            key=str(key),
            status=entry.status.value,
            duration_seconds=round(now - started, 3),
        )
        return True

    def _record_error(
        self, key: CacheKey, owner: CacheEntry, generation: int, error: Exception
    ) -> None:
        entry = self._current(key, owner, generation, "error")
        if entry is None:
            return
        entry.last_error = f"{type(error).__name__}: {error}"
        entry.retry_count += 1
        entry.expires_at = self._now_fn() + self._error_retry
        entry.pending_invalidation = False
        entry.transition(CacheStatus.ERROR)
        logger.error(
            "cache_compute_failed",
            key=str(key),
            error=entry.last_error,
            retry_count=entry.retry_count,
            has_payload=entry.has_payload,
        )

    def _revert_to_stale(
        self, key: CacheKey, owner: CacheEntry, generation: int, reason: str
    ) -> None:
        entry = self._current(key, owner, generation, "revert")
        if entry is None:
            return
        entry.last_error = reason
        entry.pending_invalidation = False
        entry.transition(CacheStatus.STALE)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def keys_for_portfolio(self, portfolio_id: str) -> List[CacheKey]:
        return [k for k in self._entries if k.portfolio_id == portfolio_id]

    def invalidate_key(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.status in (CacheStatus.FRESH, CacheStatus.ERROR):
            entry.transition(CacheStatus.STALE)
            return True
        if entry.status == CacheStatus.CALCULATING:
            entry.pending_invalidation = True
        return False

    def invalidate_portfolio(self, portfolio_id: str) -> int:
        """Mark every fresh/error entry of *portfolio_id* stale.

        Entries already stale are left alone.  An entry that is calculating
        will land as stale.

        Returns:
            Number of entries that changed to stale
        """
        changed = sum(1 for k in self.keys_for_portfolio(portfolio_id) if self.invalidate_key(k))
        logger.info("cache_portfolio_invalidated", portfolio_id=portfolio_id, entries=changed)
        return changed

    def mark_expired_stale(self) -> int:
        """Move fresh/error entries past expires_at to stale."""
        now = self._now_fn()
        changed = 0
        for entry in self._entries.values():
            if entry.status in (CacheStatus.FRESH, CacheStatus.ERROR) and (
                entry.expires_at is None or entry.expires_at <= now
            ):
                entry.transition(CacheStatus.STALE)
                changed += 1
        if changed:
            logger.info("cache_expired_entries", entries=changed)
        return changed

    def stale_keys(self) -> List[CacheKey]:
        return [k for k, e in self._entries.items() if e.status == CacheStatus.STALE]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def entry_status(self, key: CacheKey) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.to_dict(self._now_fn())

    def health(self) -> Dict[str, Any]:
        counts = {s.value: 0 for s in CacheStatus}
        calculated = []
        for entry in self._entries.values():
            counts[entry.status.value] += 1
            if entry.calculated_at is not None:
                calculated.append(entry.calculated_at)
        return {
            "total_entries": len(self._entries),
            "by_status": counts,
            "in_flight": len(self._inflight),
            "oldest_calculated_at": min(calculated) if calculated else None,
            "newest_calculated_at": max(calculated) if calculated else None,
        }

    def clear(self) -> None:
        """Drop every entry.  Computations still running finish but are discarded."""
        self._entries.clear()
        self._locks.clear()
        self._inflight.clear()
