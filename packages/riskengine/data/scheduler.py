"""Background invalidation and recomputation of cached risk results.

Holdings-change events flow through an asyncio queue: each event resolves
the owning portfolio, marks its cache entries stale and queues the stale
keys.  A periodic cycle drains the queue (plus anything that expired) into
a bounded pool of worker tasks that recompute each key.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from ..cache import CacheKey, CacheStatus, RiskCacheManager
from ..errors import CacheComputeTimeout

logger = structlog.get_logger(__name__)

PortfolioResolver = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]
RecomputeFn = Callable[[CacheKey], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Invalidation events
# ---------------------------------------------------------------------------


class HoldingsEventBus:
    """Producer/consumer queue from holdings changes to stale cache keys."""

    def __init__(self, manager: RiskCacheManager, resolve_portfolio: PortfolioResolver) -> None:
        self.manager = manager
        self.resolve_portfolio = resolve_portfolio
        self.events: asyncio.Queue[str] = asyncio.Queue()
        self.stale_queue: asyncio.Queue[CacheKey] = asyncio.Queue()

    def publish_holdings_change(self, account_id: str) -> None:
        self.events.put_nowait(account_id)
        logger.debug("holdings_change_published", account_id=account_id)

    async def _resolve(self, account_id: str) -> Optional[str]:
        result = self.resolve_portfolio(account_id)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def handle_holdings_change(self, account_id: str) -> int:
        """Invalidate the portfolio owning *account_id* and queue its stale keys."""
        portfolio_id = await self._resolve(account_id)
        if portfolio_id is None:
            logger.warning("holdings_change_unknown_account", account_id=account_id)
            return 0

        changed = self.manager.invalidate_portfolio(portfolio_id)
        for key in self.manager.keys_for_portfolio(portfolio_id):
            entry = self.manager.get_entry(key)
            if entry is not None and entry.status == CacheStatus.STALE:
                self.stale_queue.put_nowait(key)
        logger.info(
            "holdings_change_handled",
            account_id=account_id,
            portfolio_id=portfolio_id,
            invalidated=changed,
        )
        return changed

    async def process_pending(self) -> int:
        """Handle every queued event without blocking; returns entries invalidated."""
        total = 0
        while True:
            try:
                account_id = self.events.get_nowait()
            except asyncio.QueueEmpty:
                return total
            try:
                total += await self.handle_holdings_change(account_id)
            except Exception:
                logger.exception("holdings_change_failed", account_id=account_id)
            finally:
                self.events.task_done()

    def drain_stale(self) -> list[CacheKey]:
        keys = []
        while True:
            try:
                keys.append(self.stale_queue.get_nowait())
            except asyncio.QueueEmpty:
                return keys

    async def run_forever(self) -> None:
        logger.info("holdings_event_loop_started")
        while True:
            try:
                account_id = await self.events.get()
                try:
                    await self.handle_holdings_change(account_id)
                finally:
                    self.events.task_done()
            except asyncio.CancelledError:
                logger.info("holdings_event_loop_cancelled")
                raise
            except Exception:
                logger.exception("holdings_event_loop_error")


# ---------------------------------------------------------------------------
# Recompute cycle
# ---------------------------------------------------------------------------


class RecomputeScheduler:
    def __init__(
        self,
        manager: RiskCacheManager,
        recompute_fn: RecomputeFn,
        workers: int = 4,
        event_bus: HoldingsEventBus | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.manager = manager
        self.recompute_fn = recompute_fn
        self.workers = workers
        self.event_bus = event_bus
        self._task: asyncio.Task | None = None

    def _collect_keys(self) -> list[CacheKey]:
        candidates = []
        if self.event_bus is not None:
            candidates.extend(self.event_bus.drain_stale())
        candidates.extend(self.manager.stale_keys())

        seen = set()
        keys = []
        for key in candidates:
            entry = self.manager.get_entry(key)
            if key in seen or entry is None or entry.status != CacheStatus.STALE:
                continue
            seen.add(key)
            keys.append(key)
        return keys

    async def _worker(self, work: asyncio.Queue, stats: dict[str, Any]) -> None:
        while True:
            key = await work.get()
            try:
                entry = self.manager.get_entry(key)
                if entry is None or entry.status != CacheStatus.STALE:
                    # served by a request while queued
                    logger.debug("recompute_skipped", key=str(key))
                    stats["skipped"] += 1
                    continue
                await self.manager.refresh(key, lambda k=key: self.recompute_fn(k))
                stats["recomputed"] += 1
            except CacheComputeTimeout as e:
                logger.warning("recompute_timeout", key=str(key), timeout_seconds=e.timeout_seconds)
                stats["timed_out"] += 1
                stats["errors"].append(f"{key}: {e}")
            except Exception as e:
                logger.error("recompute_failed", key=str(key), error=str(e), exc_info=True)
                stats["failed"] += 1
                stats["errors"].append(f"{key}: {e}")
            finally:
                work.task_done()

    async def recompute_stale_entries(self) -> dict[str, Any]:
        """Run one recompute cycle over every stale entry.

        Returns:
            Stats dict: started_at, queued, recomputed, failed, timed_out,
            skipped, errors, completed_at
        """
        stats: dict[str, Any] = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "queued": 0,
            "recomputed": 0,
            "failed": 0,
            "timed_out": 0,
            "skipped": 0,
            "errors": [],
        }

        if self.event_bus is not None:
            await self.event_bus.process_pending()
        self.manager.mark_expired_stale()

        keys = self._collect_keys()
        stats["queued"] = len(keys)
        if keys:
            work: asyncio.Queue[CacheKey] = asyncio.Queue()
            for key in keys:
                work.put_nowait(key)
            pool = [
                asyncio.create_task(self._worker(work, stats))
                for _ in range(min(self.workers, len(keys)))
            ]
            try:
                await work.join()
            finally:
                for task in pool:
                    task.cancel()
                await asyncio.gather(*pool, return_exceptions=True)

        stats["completed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            "recompute_cycle_completed",
            queued=stats["queued"],
            recomputed=stats["recomputed"],
            failed=stats["failed"],
            timed_out=stats["timed_out"],
            skipped=stats["skipped"],
        )
        return stats

    async def run_forever(self, interval_seconds: float) -> None:
        logger.info("recompute_loop_started", interval_seconds=interval_seconds)
        while True:
            try:
                await self.recompute_stale_entries()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("recompute_loop_cancelled")
                raise
            except Exception:
                logger.exception("recompute_loop_error")
                await asyncio.sleep(interval_seconds)

    def start(self, interval_seconds: float) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(interval_seconds))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
