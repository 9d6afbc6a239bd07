"""Tests for the idle-time eviction scheduler."""

import pytest

from bucketdedup.bucket import EvictionScheduler


class TestEvictionScheduler:
    """Tests for EvictionScheduler."""

    @pytest.fixture
    def manager(self, manager_factory, memory_store, listener):
        manager = manager_factory(memory_store)
        manager.start(listener)
        return manager

    def test_sweeps_every_tick_by_default(self, manager, clock):
        scheduler = EvictionScheduler(manager)

        assert scheduler.on_idle() is not None
        assert scheduler.on_idle() is not None
        assert scheduler.run_count == 2
        assert scheduler.last_run_ms == clock()

    def test_interval_limits_sweeps(self, manager, clock):
        scheduler = EvictionScheduler(manager, sweep_interval_ms=5000)

        assert scheduler.on_idle() is not None
        clock.advance(4999)
        assert scheduler.on_idle() is None
        clock.advance(1)
        assert scheduler.on_idle() is not None
        assert scheduler.run_count == 2

    def test_explicit_time(self, manager):
        scheduler = EvictionScheduler(manager, sweep_interval_ms=1000)
        scheduler.on_idle(50_000)

        assert not scheduler.is_due(50_500)
        assert scheduler.is_due(51_000)
        assert manager.expired_through == 48

    def test_run_now_ignores_interval(self, manager):
        scheduler = EvictionScheduler(manager, sweep_interval_ms=60_000)
        scheduler.on_idle()

        result = scheduler.run_now()

        assert result.expired_through == manager.expired_through
        assert scheduler.run_count == 2

    def test_on_sweep_callback(self, manager, memory_store):
        results = []
        memory_store.write(3, [("a",)])
        scheduler = EvictionScheduler(manager, on_sweep=results.append)

        scheduler.on_idle()

        assert len(results) == 1
        assert results[0].purged == 1

    def test_negative_interval_rejected(self, manager):
        with pytest.raises(ValueError):
            EvictionScheduler(manager, sweep_interval_ms=-1)
