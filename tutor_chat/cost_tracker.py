"""
Usage and cost accounting per tenant.

Every completion upserts the tenant's row for the current UTC day. Accounting
must never break a chat response: track() logs and swallows its failures.
Database work is synchronous SQLAlchemy, run in worker threads.
"""
import asyncio
import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from tutor_chat.db.models import UsageRecord
from tutor_chat.errors import CostTrackingFailure, ValidationError
from tutor_chat.logging_config import get_logger
from tutor_chat.model_registry import ModelRegistry
from tutor_chat.models import MonthlyUsage, TierLimits, TierLimitStatus, WarningLevel

logger = get_logger(__name__)

WARNING_THRESHOLD = 0.75
CRITICAL_THRESHOLD = 0.90

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def month_bounds(month: str) -> Tuple[date, date]:
    """First day of month and first day of the following month."""
    if not MONTH_PATTERN.match(month):
        raise ValidationError(f"Invalid month: {month}", "Month must be formatted as YYYY-MM.")
    year, mon = (int(part) for part in month.split("-"))
    start = date(year, mon, 1)
    end = date(year + 1, 1, 1) if mon == 12 else date(year, mon + 1, 1)
    return start, end


class CostTracker:
    """Converts token counts into cost and accumulates daily usage rows."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: ModelRegistry,
        tier_limits: Dict[str, TierLimits],
        today: Callable[[], date] = utc_today,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.tier_limits = tier_limits
        self.today = today

    async def track(self, tenant_id: str, input_tokens: int, output_tokens: int, model_id: str) -> Optional[float]:
        """
        Add one completion to today's usage row.

        Returns the cost recorded, or None if accounting failed. Never raises.
        """
        try:
            cost = self.registry.cost(input_tokens, output_tokens, model_id)
            await asyncio.to_thread(self._upsert, tenant_id, self.today(), input_tokens, output_tokens, cost, model_id)
        except Exception as e:
            logger.error(f"Failed to track message cost for tenant {tenant_id}: {e}", exc_info=True)
            return None

        logger.info(
            f"Tracked cost for tenant {tenant_id}: ${cost:.6f} ({input_tokens}+{output_tokens} tokens, {model_id})"
        )
        return cost

    def _upsert(self, tenant_id: str, usage_date: date, input_tokens: int, output_tokens: int, cost: float, model_id: str):
        with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                insert = pg_insert
            elif dialect == "sqlite":
                insert = sqlite_insert
            else:
                raise CostTrackingFailure(f"Unsupported database dialect for usage upsert: {dialect}")

            stmt = insert(UsageRecord).values(
                tenant_id=tenant_id,
                usage_date=usage_date,
                message_count=1,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=cost,
                last_model_id=model_id,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "usage_date"],
                set_={
                    "message_count": UsageRecord.message_count + stmt.excluded.message_count,
                    "input_tokens": UsageRecord.input_tokens + stmt.excluded.input_tokens,
                    "output_tokens": UsageRecord.output_tokens + stmt.excluded.output_tokens,
                    "cost_usd": UsageRecord.cost_usd + stmt.excluded.cost_usd,
                    "last_model_id": stmt.excluded.last_model_id,
                    "updated_at": func.now(),
                },
            )
            session.execute(stmt)
            session.commit()

    async def monthly_usage(self, tenant_id: str, month: Optional[str] = None) -> MonthlyUsage:
        """Aggregate of the tenant's daily rows for a month (YYYY-MM, default current)."""
        target = month or self.today().strftime("%Y-%m")
        start, end = month_bounds(target)
        try:
            totals = await asyncio.to_thread(self._sum_usage, tenant_id, start, end)
        except SQLAlchemyError as e:
            raise CostTrackingFailure(f"Failed to get monthly usage: {e}") from e

        messages, input_tokens, output_tokens, cost = totals
        return MonthlyUsage(
            tenant_id=tenant_id,
            month=target,
            total_messages=int(messages),
            total_input_tokens=int(input_tokens),
            total_output_tokens=int(output_tokens),
            total_cost_usd=float(cost),
        )

    def _sum_usage(self, tenant_id: str, start: date, end: date):
        with self.session_factory() as session:
            stmt = select(
                func.coalesce(func.sum(UsageRecord.message_count), 0),
                func.coalesce(func.sum(UsageRecord.input_tokens), 0),
                func.coalesce(func.sum(UsageRecord.output_tokens), 0),
                func.coalesce(func.sum(UsageRecord.cost_usd), 0.0),
            ).where(
                UsageRecord.tenant_id == tenant_id,
                UsageRecord.usage_date >= start,
                UsageRecord.usage_date < end,
            )
            return session.execute(stmt).one()

    async def check_tier_limits(self, tenant_id: str, tier: str) -> TierLimitStatus:
        """Compare this month's usage against the tier's monthly allowance."""
        limits = self.tier_limits.get(tier)
        if limits is None:
            raise ValidationError(f"Unknown tier: {tier}", f"Unknown subscription tier '{tier}'.")

        usage = await self.monthly_usage(tenant_id)

        # Enterprise has unlimited usage
        if tier == "enterprise":
            return TierLimitStatus(True, WarningLevel.NONE, usage, limits)

        ratios = []
        if limits.monthly_messages is not None:
            ratios.append(_ratio(usage.total_messages, limits.monthly_messages))
        if limits.monthly_cost_limit_usd is not None:
            ratios.append(_ratio(usage.total_cost_usd, limits.monthly_cost_limit_usd))

        highest = max(ratios, default=0.0)
        if highest >= 1.0:
            level = WarningLevel.EXCEEDED
        elif highest >= CRITICAL_THRESHOLD:
            level = WarningLevel.CRITICAL
        elif highest >= WARNING_THRESHOLD:
            level = WarningLevel.WARNING
        else:
            level = WarningLevel.NONE

        return TierLimitStatus(level != WarningLevel.EXCEEDED, level, usage, limits)

    async def cost_trend(self, tenant_id: str, days: int = 30) -> List[dict]:
        """Daily cost and message counts for the last `days` days, oldest first."""
        since = self.today() - timedelta(days=days)

        def query():
            with self.session_factory() as session:
                stmt = (
                    select(UsageRecord.usage_date, UsageRecord.cost_usd, UsageRecord.message_count)
                    .where(UsageRecord.tenant_id == tenant_id, UsageRecord.usage_date >= since)
                    .order_by(UsageRecord.usage_date)
                )
                return session.execute(stmt).all()

        try:
            rows = await asyncio.to_thread(query)
        except SQLAlchemyError as e:
            raise CostTrackingFailure(f"Failed to get cost trend: {e}") from e

        return [{"date": d.isoformat(), "cost": cost, "messages": messages} for d, cost, messages in rows]

    async def top_spenders(self, limit: int = 10, month: Optional[str] = None) -> List[dict]:
        """Tenants with the highest spend in a month."""
        start, end = month_bounds(month or self.today().strftime("%Y-%m"))

        def query():
            with self.session_factory() as session:
                total_cost = func.sum(UsageRecord.cost_usd)
                stmt = (
                    select(UsageRecord.tenant_id, total_cost, func.sum(UsageRecord.message_count))
                    .where(UsageRecord.usage_date >= start, UsageRecord.usage_date < end)
                    .group_by(UsageRecord.tenant_id)
                    .order_by(total_cost.desc())
                    .limit(limit)
                )
                return session.execute(stmt).all()

        try:
            rows = await asyncio.to_thread(query)
        except SQLAlchemyError as e:
            raise CostTrackingFailure(f"Failed to get top spenders: {e}") from e

        return [
            {
                "tenant_id": tenant_id,
                "total_cost_usd": float(cost),
                "total_messages": int(messages),
                "average_cost_per_message": float(cost) / messages if messages else 0.0,
            }
            for tenant_id, cost, messages in rows
        ]

    async def estimate_monthly_usage(self, tenant_id: str) -> dict:
        """Project the current month's totals from the daily average so far."""
        usage = await self.monthly_usage(tenant_id)
        today = self.today()
        days_in_month = calendar.monthrange(today.year, today.month)[1]
        days_elapsed = today.day

        return {
            "current_cost": usage.total_cost_usd,
            "current_messages": usage.total_messages,
            "estimated_monthly_cost": usage.total_cost_usd / days_elapsed * days_in_month,
            "estimated_monthly_messages": round(usage.total_messages / days_elapsed * days_in_month),
            "days_elapsed": days_elapsed,
            "days_remaining": days_in_month - days_elapsed,
        }

    async def reset_usage(self, tenant_id: str, month: Optional[str] = None) -> int:
        """Delete a tenant's usage rows for a month. Admin only."""
        start, end = month_bounds(month or self.today().strftime("%Y-%m"))

        def remove():
            with self.session_factory() as session:
                result = session.execute(
                    delete(UsageRecord).where(
                        UsageRecord.tenant_id == tenant_id,
                        UsageRecord.usage_date >= start,
                        UsageRecord.usage_date < end,
                    )
                )
                session.commit()
                return result.rowcount

        try:
            deleted = await asyncio.to_thread(remove)
        except SQLAlchemyError as e:
            raise CostTrackingFailure(f"Failed to reset usage: {e}") from e

        logger.info(f"Reset usage for tenant {tenant_id} ({start:%Y-%m}): {deleted} rows")
        return deleted


def _ratio(used: float, limit: float) -> float:
    if limit <= 0:
        return float("inf") if used > 0 else 1.0
    return used / limit
