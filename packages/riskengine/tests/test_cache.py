"""
Unit tests for the cache coherency manager.

Tests cover:
- Hits, misses and TTL expiry
- Single-flight computation
- Invalidation (including while calculating)
- Timeouts, errors and stale fallback
- Late results and introspection
"""

import asyncio

import pytest

from riskengine.cache import (
    CacheKey,
    CacheStatus,
    MetricFamily,
    RiskCacheManager,
)
from riskengine.errors import CacheComputeTimeout

RISK_KEY = CacheKey('p1', MetricFamily.RISK, 365, 'SPY')
CORR_KEY = CacheKey('p1', MetricFamily.CORRELATIONS, 365)


class Counter:
    """Compute function that counts calls and returns an increasing value."""

    def __init__(self, gate=None, fail=False):
        self.calls = 0
        self.gate = gate
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError('provider down')
        return {'value': self.calls}


async def _yield(n=3):
    for _ in range(n):
        await asyncio.sleep(0)


@pytest.fixture
def manager(clock):
    return RiskCacheManager(now_fn=clock, timeout_seconds=1.0)


class TestHitsAndExpiry:
    """Tests for cache hits, misses and TTLs."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, manager):
        compute = Counter()

        first = await manager.get_or_compute(RISK_KEY, compute)
        second = await manager.get_or_compute(RISK_KEY, compute)

        assert first == second == {'value': 1}
        assert compute.calls == 1
        assert manager.get_entry(RISK_KEY).status == CacheStatus.FRESH

    @pytest.mark.asyncio
    async def test_ttl_per_family(self, manager, clock):
        await manager.get_or_compute(RISK_KEY, Counter())
        await manager.get_or_compute(CORR_KEY, Counter())

        assert manager.get_entry(RISK_KEY).expires_at == clock.now + 4 * 3600
        assert manager.get_entry(CORR_KEY).expires_at == clock.now + 24 * 3600

    @pytest.mark.asyncio
    async def test_expired_entry_recomputed(self, manager, clock):
        compute = Counter()
        await manager.get_or_compute(RISK_KEY, compute)

        clock.advance(4 * 3600 + 1)
        result = await manager.get_or_compute(RISK_KEY, compute)

        assert result == {'value': 2}
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_mark_expired_stale(self, manager, clock):
        await manager.get_or_compute(RISK_KEY, Counter())
        await manager.get_or_compute(CORR_KEY, Counter())

        clock.advance(5 * 3600)

        assert manager.mark_expired_stale() == 1
        assert manager.stale_keys() == [RISK_KEY]
        assert manager.get_entry(CORR_KEY).status == CacheStatus.FRESH


class TestSingleFlight:
    """Concurrent callers share one computation."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_compute(self, manager):
        gate = asyncio.Event()
        compute = Counter(gate=gate)

        tasks = [asyncio.ensure_future(manager.get_or_compute(RISK_KEY, compute)) for _ in range(5)]
        await _yield()
        assert manager.is_calculating(RISK_KEY)
        assert manager.get_entry(RISK_KEY).status == CacheStatus.CALCULATING

        gate.set()
        results = await asyncio.gather(*tasks)

        assert compute.calls == 1
        assert all(r == {'value': 1} for r in results)
        assert not manager.is_calculating(RISK_KEY)

    @pytest.mark.asyncio
    async def test_force_refresh_joins_inflight(self, manager):
        gate = asyncio.Event()
        compute = Counter(gate=gate)

        a = asyncio.ensure_future(manager.get_or_compute(RISK_KEY, compute))
        await _yield()
        b = asyncio.ensure_future(manager.get_or_compute(RISK_KEY, compute, force_refresh=True))
        await _yield()
        gate.set()

        assert await a == await b
        assert compute.calls == 1


class TestRefreshAndInvalidation:
    """Tests for force_refresh and invalidation."""

    @pytest.mark.asyncio
    async def test_force_refresh_advances_calculated_at(self, manager):
        await manager.get_or_compute(RISK_KEY, Counter())
        before = manager.get_entry(RISK_KEY).calculated_at

        gate = asyncio.Event()
        task = asyncio.ensure_future(
            manager.get_or_compute(RISK_KEY, Counter(gate=gate), force_refresh=True)
        )
        await _yield()
        assert manager.get_entry(RISK_KEY).status == CacheStatus.CALCULATING

        gate.set()
        await task

        entry = manager.get_entry(RISK_KEY)
        assert entry.status == CacheStatus.FRESH
        assert entry.calculated_at > before

    @pytest.mark.asyncio
    async def test_invalidate_portfolio(self, manager):
        await manager.get_or_compute(RISK_KEY, Counter())
        await manager.get_or_compute(CORR_KEY, Counter())
        other = CacheKey('p2', MetricFamily.RISK, 365, 'SPY')
        await manager.get_or_compute(other, Counter())

        assert manager.invalidate_portfolio('p1') == 2
        assert manager.get_entry(RISK_KEY).status == CacheStatus.STALE
        assert manager.get_entry(other).status == CacheStatus.FRESH
        assert manager.invalidate_portfolio('p1') == 0

    @pytest.mark.asyncio
    async def test_stale_entry_recomputed(self, manager):
        compute = Counter()
        await manager.get_or_compute(RISK_KEY, compute)
        manager.invalidate_key(RISK_KEY)

        assert await manager.get_or_compute(RISK_KEY, compute) == {'value': 2}

    @pytest.mark.asyncio
    async def test_invalidation_while_calculating_lands_stale(self, manager):
        gate = asyncio.Event()
        task = asyncio.ensure_future(manager.get_or_compute(RISK_KEY, Counter(gate=gate)))
        await _yield()

        assert manager.invalidate_portfolio('p1') == 0
        gate.set()
        result = await task

        entry = manager.get_entry(RISK_KEY)
        assert result == {'value': 1}
        assert entry.status == CacheStatus.STALE
        assert not entry.pending_invalidation
        assert entry.payload == {'value': 1}


class TestFailures:
    """Tests for timeouts, errors and late results."""

    @pytest.mark.asyncio
    async def test_timeout_reverts_to_stale(self, clock):
        manager = RiskCacheManager(now_fn=clock, timeout_seconds=0.05)

        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(CacheComputeTimeout):
            await manager.get_or_compute(RISK_KEY, slow)

        entry = manager.get_entry(RISK_KEY)
        assert entry.status == CacheStatus.STALE
        assert 'timed out' in entry.last_error
        assert not manager.is_calculating(RISK_KEY)

    @pytest.mark.asyncio
    async def test_error_without_payload_raises(self, manager):
        with pytest.raises(RuntimeError, match="provider down"):
            await manager.get_or_compute(RISK_KEY, Counter(fail=True))

        entry = manager.get_entry(RISK_KEY)
        assert entry.status == CacheStatus.ERROR
        assert entry.retry_count == 1

    @pytest.mark.asyncio
    async def test_error_keeps_last_good_payload(self, manager, clock):
        await manager.get_or_compute(RISK_KEY, Counter())
        manager.invalidate_key(RISK_KEY)

        failing = Counter(fail=True)
        result = await manager.get_or_compute(RISK_KEY, failing)

        entry = manager.get_entry(RISK_KEY)
        assert result == {'value': 1}
        assert entry.status == CacheStatus.ERROR
        assert 'RuntimeError' in entry.last_error
        assert entry.expires_at == clock.now + 3600

        # served without recomputing until the retry window ends
        assert await manager.get_or_compute(RISK_KEY, failing) == {'value': 1}
        assert failing.calls == 1

        clock.advance(3601)
        recovered = await manager.get_or_compute(RISK_KEY, Counter())
        assert recovered == {'value': 1}
        assert manager.get_entry(RISK_KEY).status == CacheStatus.FRESH
        assert manager.get_entry(RISK_KEY).retry_count == 0

    @pytest.mark.asyncio
    async def test_refresh_raises_instead_of_serving_stale(self, manager):
        await manager.get_or_compute(RISK_KEY, Counter())
        with pytest.raises(RuntimeError):
            await manager.refresh(RISK_KEY, Counter(fail=True))

    @pytest.mark.asyncio
    async def test_late_result_discarded_after_clear(self, manager):
        gate = asyncio.Event()
        task = asyncio.ensure_future(manager.get_or_compute(RISK_KEY, Counter(gate=gate)))
        await _yield()

        manager.clear()
        gate.set()
        await task

        assert manager.get_entry(RISK_KEY) is None

    @pytest.mark.asyncio
    async def test_late_error_after_clear_propagates(self, manager):
        gate = asyncio.Event()
        task = asyncio.ensure_future(
            manager.get_or_compute(RISK_KEY, Counter(gate=gate, fail=True))
        )
        await _yield()

        manager.clear()
        gate.set()

        with pytest.raises(RuntimeError, match="provider down"):
            await task
        assert manager.get_entry(RISK_KEY) is None

    @pytest.mark.asyncio
    async def test_request_after_clear_starts_new_compute(self, manager):
        old_gate = asyncio.Event()
        old = asyncio.ensure_future(manager.get_or_compute(RISK_KEY, Counter(gate=old_gate)))
        await _yield()

        manager.clear()
        assert not manager.is_calculating(RISK_KEY)

        fresh = Counter()
        fresh.calls = 10
        assert await manager.get_or_compute(RISK_KEY, fresh) == {'value': 11}

        # the orphaned computation finishes last and must not overwrite
        old_gate.set()
        assert await old == {'value': 1}
        entry = manager.get_entry(RISK_KEY)
        assert entry.payload == {'value': 11}
        assert entry.status == CacheStatus.FRESH


class TestIntrospection:
    """Tests for entry_status and health."""

    @pytest.mark.asyncio
    async def test_entry_status(self, manager, clock):
        await manager.get_or_compute(RISK_KEY, Counter())
        clock.advance(10)

        status = manager.entry_status(RISK_KEY)

        assert status['key'] == 'p1/risk/365/SPY'
        assert status['status'] == 'fresh'
        assert status['age_seconds'] == 10
        assert status['generation'] == 1
        assert manager.entry_status(CORR_KEY) is None

    @pytest.mark.asyncio
    async def test_health(self, manager):
        await manager.get_or_compute(RISK_KEY, Counter())
        await manager.get_or_compute(CORR_KEY, Counter())
        manager.invalidate_key(CORR_KEY)

        health = manager.health()

        assert health['total_entries'] == 2
        assert health['by_status']['fresh'] == 1
        assert health['by_status']['stale'] == 1
        assert health['in_flight'] == 0
        assert health['oldest_calculated_at'] is not None

    def test_history_is_bounded(self):
        from riskengine.cache import CacheEntry

        entry = CacheEntry(key=RISK_KEY, status=CacheStatus.STALE)
        for _ in range(20):
            entry.transition(CacheStatus.CALCULATING)
            entry.transition(CacheStatus.FRESH)
        assert len(entry.history) == 16
