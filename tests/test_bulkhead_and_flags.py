"""
Tests for bulkheads, feature flags and the reliability registry
"""
import asyncio

import pytest

from fulfillment.core.bulkhead import Bulkhead, BulkheadRegistry
from fulfillment.core.config import settings
from fulfillment.core.feature_flags import FeatureFlags, PURCHASE_EMAILS, REFUND_EMAILS
from fulfillment.core.reliability import (
    DB_BREAKER,
    EMAIL_BREAKER,
    FULFILLMENT_BULKHEAD,
    build_reliability_registry,
)


class TestBulkhead:

    @pytest.mark.unit
    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            Bulkhead("bad", 0)

    @pytest.mark.unit
    async def test_limits_concurrency(self):
        bulkhead = Bulkhead("fulfillment", max_concurrent=2)
        running = 0
        peak = 0

        async def work():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "ok"

        results = await asyncio.gather(*(bulkhead.execute(work) for _ in range(6)))

        assert results == ["ok"] * 6
        assert peak == 2
        assert bulkhead.active_count == 0
        assert bulkhead.queue_size == 0

    @pytest.mark.unit
    async def test_stats_while_saturated(self):
        bulkhead = Bulkhead("fulfillment", max_concurrent=1)
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        first = asyncio.create_task(bulkhead.execute(blocker))
        second = asyncio.create_task(bulkhead.execute(blocker))
        await asyncio.sleep(0.01)

        stats = bulkhead.stats()
        assert stats["active_count"] == 1
        assert stats["queue_size"] == 1
        assert stats["utilization_percent"] == 100.0

        release.set()
        await asyncio.gather(first, second)
        assert bulkhead.stats()["active_count"] == 0

    @pytest.mark.unit
    async def test_error_releases_slot(self):
        bulkhead = Bulkhead("fulfillment", max_concurrent=1)

        async def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await bulkhead.execute(boom)

        async def ok():
            return 1

        assert await asyncio.wait_for(bulkhead.execute(ok), timeout=1) == 1

    @pytest.mark.unit
    def test_registry_defaults_and_stats(self):
        registry = BulkheadRegistry(default_max_concurrent=4)
        registry.get_or_create("b")
        registry.get_or_create("a", max_concurrent=1)

        assert registry.get("a").max_concurrent == 1
        assert registry.get("b").max_concurrent == 4
        assert [s["name"] for s in registry.all_stats()] == ["a", "b"]


class TestFeatureFlags:

    @pytest.mark.unit
    def test_unknown_flag_is_disabled(self):
        flags = FeatureFlags({PURCHASE_EMAILS: True})

        assert flags.is_enabled(PURCHASE_EMAILS) is True
        assert flags.is_enabled("does_not_exist") is False
        assert flags.is_known("does_not_exist") is False

    @pytest.mark.unit
    def test_toggle(self):
        flags = FeatureFlags({REFUND_EMAILS: True})

        flags.disable(REFUND_EMAILS)
        assert flags.is_enabled(REFUND_EMAILS) is False

        flags.enable(REFUND_EMAILS)
        assert flags.is_enabled(REFUND_EMAILS) is True

    @pytest.mark.unit
    def test_all_is_a_sorted_copy(self):
        flags = FeatureFlags({REFUND_EMAILS: False, PURCHASE_EMAILS: True})

        snapshot = flags.all()
        snapshot[PURCHASE_EMAILS] = False

        assert list(flags.all()) == [PURCHASE_EMAILS, REFUND_EMAILS]
        assert flags.is_enabled(PURCHASE_EMAILS) is True


class TestReliabilityRegistry:

    @pytest.mark.unit
    def test_registers_known_components(self):
        registry = build_reliability_registry(settings)

        assert registry.breakers.names() == [DB_BREAKER, EMAIL_BREAKER]
        assert registry.bulkheads.get(FULFILLMENT_BULKHEAD) is not None
        assert registry.flags.is_enabled(PURCHASE_EMAILS) is settings.FEATURE_PURCHASE_EMAILS
        assert registry.retry_policy.max_attempts == settings.RETRY_MAX_ATTEMPTS

    @pytest.mark.unit
    def test_each_build_is_fresh(self):
        first = build_reliability_registry(settings)
        second = build_reliability_registry(settings)

        assert first.breakers.get_or_create(DB_BREAKER) is not second.breakers.get_or_create(DB_BREAKER)

    @pytest.mark.unit
    async def test_snapshot_summary(self):
        registry = build_reliability_registry(settings)
        registry.flags.disable(REFUND_EMAILS)
        email = registry.breakers.get_or_create(EMAIL_BREAKER)

        async def fail():
            raise ConnectionError("provider down")

        for _ in range(email.config.failure_threshold):
            with pytest.raises(ConnectionError):
                await email.execute(fail)

        snapshot = registry.snapshot()

        assert snapshot["summary"]["total_circuits"] == 2
        assert snapshot["summary"]["open_circuits"] == 1
        assert snapshot["summary"]["half_open_circuits"] == 0
        assert snapshot["summary"]["total_bulkheads"] == 1
        assert snapshot["summary"]["saturated_bulkheads"] == 0
        assert snapshot["summary"]["disabled_features"] == [REFUND_EMAILS]
        assert snapshot["feature_flags"][REFUND_EMAILS] is False
