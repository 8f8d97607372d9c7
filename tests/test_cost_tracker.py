"""
Tests for usage and cost accounting, against SQLite.
"""
import asyncio
import os
import tempfile
import unittest
from datetime import date

from sqlalchemy import func, select

from tutor_chat.cost_tracker import CostTracker, month_bounds
from tutor_chat.db.database import make_engine, make_session_factory
from tutor_chat.db.init_db import init_db
from tutor_chat.db.models import UsageRecord
from tutor_chat.errors import ValidationError
from tutor_chat.model_registry import ModelRegistry
from tutor_chat.models import TierLimits, WarningLevel

TODAY = date(2026, 10, 10)

TIER_LIMITS = {
    "basic": TierLimits("basic", 1000, 10.0, 10, 100, 500),
    "pro": TierLimits("pro", 5000, 50.0, 10, 100, 2000),
    "enterprise": TierLimits("enterprise", None, None, 10, 100, 10000),
}


class TestCostTracker(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.engine = make_engine("sqlite://")
        init_db(self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.registry = ModelRegistry()
        self.tracker = CostTracker(self.session_factory, self.registry, TIER_LIMITS, today=lambda: TODAY)

    def tearDown(self):
        self.engine.dispose()

    def seed(self, tenant_id, usage_date, messages, cost):
        with self.session_factory() as session:
            session.add(UsageRecord(
                tenant_id=tenant_id,
                usage_date=usage_date,
                message_count=messages,
                input_tokens=messages * 1000,
                output_tokens=messages * 200,
                cost_usd=cost,
                last_model_id="gpt-4o-mini",
            ))
            session.commit()

    def row_count(self):
        with self.session_factory() as session:
            return session.execute(select(func.count()).select_from(UsageRecord)).scalar_one()

    async def test_track_returns_registry_cost(self):
        cost = await self.tracker.track("t1", 1200, 300, "gpt-4o-mini")
        assert cost == self.registry.cost(1200, 300, "gpt-4o-mini")

    async def test_track_accumulates_into_one_row_per_day(self):
        await self.tracker.track("t1", 1000, 100, "gpt-4o-mini")
        await self.tracker.track("t1", 2000, 200, "gpt-4o")

        usage = await self.tracker.monthly_usage("t1")

        assert self.row_count() == 1
        assert usage.total_messages == 2
        assert usage.total_input_tokens == 3000
        assert usage.total_output_tokens == 300
        expected = self.registry.cost(1000, 100, "gpt-4o-mini") + self.registry.cost(2000, 200, "gpt-4o")
        assert abs(usage.total_cost_usd - expected) < 1e-12

    async def test_cost_never_decreases(self):
        previous = 0.0
        for _ in range(5):
            await self.tracker.track("t1", 10, 10, "gpt-4o-mini")
            current = (await self.tracker.monthly_usage("t1")).total_cost_usd
            assert current > previous
            previous = current

    async def test_track_unknown_model_is_logged_not_raised(self):
        with self.assertLogs("tutor_chat.cost_tracker", level="ERROR"):
            cost = await self.tracker.track("t1", 10, 10, "no-such-model")

        assert cost is None
        assert self.row_count() == 0

    async def test_track_database_failure_is_swallowed(self):
        engine = make_engine("sqlite://")  # no tables
        tracker = CostTracker(make_session_factory(engine), self.registry, TIER_LIMITS, today=lambda: TODAY)

        with self.assertLogs("tutor_chat.cost_tracker", level="ERROR"):
            assert await tracker.track("t1", 10, 10, "gpt-4o-mini") is None
        engine.dispose()

    async def test_monthly_usage_only_counts_the_month(self):
        self.seed("t1", date(2026, 9, 30), 50, 1.0)
        self.seed("t1", date(2026, 10, 1), 7, 0.25)
        self.seed("t2", date(2026, 10, 1), 99, 9.0)

        october = await self.tracker.monthly_usage("t1")
        september = await self.tracker.monthly_usage("t1", "2026-09")

        assert october.month == "2026-10"
        assert october.total_messages == 7
        assert september.total_messages == 50
        assert abs(october.average_cost_per_message - 0.25 / 7) < 1e-12

    async def test_monthly_usage_empty(self):
        usage = await self.tracker.monthly_usage("nobody")
        assert usage.total_messages == 0
        assert usage.total_cost_usd == 0.0
        assert usage.average_cost_per_message == 0.0

    async def test_invalid_month_rejected(self):
        with self.assertRaises(ValidationError):
            await self.tracker.monthly_usage("t1", "2026-13")

    async def test_basic_tier_at_message_limit_is_exceeded(self):
        self.seed("t1", TODAY, 1000, 1.0)

        status = await self.tracker.check_tier_limits("t1", "basic")

        assert status.within_limits is False
        assert status.warning_level == WarningLevel.EXCEEDED

    async def test_warning_levels(self):
        self.seed("warn", TODAY, 750, 1.0)
        self.seed("crit", TODAY, 900, 1.0)
        self.seed("ok", TODAY, 100, 1.0)

        assert (await self.tracker.check_tier_limits("warn", "basic")).warning_level == WarningLevel.WARNING
        assert (await self.tracker.check_tier_limits("crit", "basic")).warning_level == WarningLevel.CRITICAL
        ok = await self.tracker.check_tier_limits("ok", "basic")
        assert ok.warning_level == WarningLevel.NONE
        assert ok.within_limits is True

    async def test_cost_limit_also_counts(self):
        self.seed("t1", TODAY, 10, 9.5)
        status = await self.tracker.check_tier_limits("t1", "basic")
        assert status.warning_level == WarningLevel.CRITICAL
        assert status.within_limits is True

    async def test_enterprise_is_unlimited(self):
        self.seed("t1", TODAY, 1_000_000, 50_000.0)
        status = await self.tracker.check_tier_limits("t1", "enterprise")
        assert status.within_limits is True
        assert status.warning_level == WarningLevel.NONE

    async def test_unknown_tier_rejected(self):
        with self.assertRaises(ValidationError):
            await self.tracker.check_tier_limits("t1", "gold")

    async def test_cost_trend(self):
        self.seed("t1", date(2026, 10, 8), 3, 0.3)
        self.seed("t1", date(2026, 10, 9), 4, 0.4)
        self.seed("t1", date(2026, 8, 1), 9, 0.9)

        trend = await self.tracker.cost_trend("t1", days=7)

        assert [point["date"] for point in trend] == ["2026-10-08", "2026-10-09"]
        assert trend[1]["messages"] == 4

    async def test_top_spenders(self):
        self.seed("small", TODAY, 1, 0.1)
        self.seed("big", TODAY, 10, 5.0)
        self.seed("mid", TODAY, 5, 1.0)

        top = await self.tracker.top_spenders(limit=2)

        assert [t["tenant_id"] for t in top] == ["big", "mid"]
        assert top[0]["average_cost_per_message"] == 0.5

    async def test_estimate_monthly_usage(self):
        self.seed("t1", date(2026, 10, 1), 100, 1.0)

        estimate = await self.tracker.estimate_monthly_usage("t1")

        assert estimate["days_elapsed"] == 10
        assert estimate["days_remaining"] == 21
        assert abs(estimate["estimated_monthly_cost"] - 3.1) < 1e-9
        assert estimate["estimated_monthly_messages"] == 310

    async def test_reset_usage(self):
        self.seed("t1", TODAY, 5, 0.5)
        self.seed("t1", date(2026, 9, 1), 5, 0.5)

        deleted = await self.tracker.reset_usage("t1")

        assert deleted == 1
        assert (await self.tracker.monthly_usage("t1")).total_messages == 0
        assert (await self.tracker.monthly_usage("t1", "2026-09")).total_messages == 5


class TestConcurrentTracking(unittest.IsolatedAsyncioTestCase):
    """Concurrent upserts from worker threads must not lose increments."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = make_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'usage.db')}")
        init_db(self.engine)
        self.tracker = CostTracker(make_session_factory(self.engine), ModelRegistry(), TIER_LIMITS, today=lambda: TODAY)

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    async def test_no_lost_updates(self):
        results = await asyncio.gather(*(self.tracker.track("t1", 100, 10, "gpt-4o-mini") for _ in range(10)))
        usage = await self.tracker.monthly_usage("t1")

        assert all(r is not None for r in results)
        assert usage.total_messages == 10
        assert usage.total_input_tokens == 1000


class TestMonthBounds(unittest.TestCase):

    def test_december_rolls_over(self):
        assert month_bounds("2026-12") == (date(2026, 12, 1), date(2027, 1, 1))

    def test_bad_format(self):
        with self.assertRaises(ValidationError):
            month_bounds("October")


if __name__ == "__main__":
    unittest.main()
