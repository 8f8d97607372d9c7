"""
Two-tier sliding-window rate limiting for chat requests.

Per user: requests per minute and per hour. Per tenant: requests per day,
sized by subscription tier. Both tiers must pass for admission.

Each window is a sliding-window counter: the current fixed bucket plus the
previous bucket weighted by how much of it still overlaps the trailing window.
Buckets are bumped with an atomic INCR+EXPIRE transaction, so concurrent
requests each observe a distinct count and at most `limit` of them pass.

Rate limiting here is cost control, not a security boundary: when the counter
store is unreachable requests are allowed and the failure is logged.
"""
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tutor_chat.errors import ValidationError
from tutor_chat.logging_config import get_logger
from tutor_chat.models import RateLimitDecision, TierLimits, TIERS

logger = get_logger(__name__)

STORE_ERRORS = (RedisError, OSError)


@dataclass(frozen=True)
class Window:
    name: str  # minute | hour | day
    scope: str  # user | tenant
    subject_id: str
    limit: int
    seconds: int


@dataclass
class WindowResult:
    window: Window
    allowed: bool
    remaining: int
    retry_after_seconds: int


class RateLimiter:
    """Sliding-window admission control over a shared Redis counter store."""

    def __init__(
        self,
        client: Redis,
        tier_limits: Dict[str, TierLimits],
        namespace: str = "tutorchat",
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.tier_limits = tier_limits
        self.prefix = f"{namespace}:ratelimit"
        self.clock = clock

    def windows_for(self, user_id: str, tenant_id: str, tier: str) -> List[Window]:
        if tier not in self.tier_limits:
            raise ValidationError(f"Unknown tier: {tier}", f"Unknown subscription tier '{tier}'. Expected one of {', '.join(TIERS)}.")
        limits = self.tier_limits[tier]
        return [
            Window("minute", "user", user_id, limits.requests_per_minute_per_user, 60),
            Window("hour", "user", user_id, limits.requests_per_hour_per_user, 3600),
            Window("day", "tenant", tenant_id, limits.requests_per_day_per_tenant, 86400),
        ]

    def _key(self, window: Window, bucket: int) -> str:
        return f"{self.prefix}:{window.scope}:{window.name}:{window.subject_id}:{bucket}"

    async def check(self, user_id: str, tenant_id: str, tier: str) -> RateLimitDecision:
        """
        Count this request against every window and decide admission.

        A denied request gives back the increments it took, so rejected
        attempts do not eat into the quota.
        """
        windows = self.windows_for(user_id, tenant_id, tier)
        now = self.clock()

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for window in windows:
                    bucket = int(now // window.seconds)
                    pipe.incr(self._key(window, bucket))
                    pipe.expire(self._key(window, bucket), window.seconds * 2)
                    pipe.get(self._key(window, bucket - 1))
                replies = await pipe.execute()
        except STORE_ERRORS as e:
            logger.warning(f"Rate limit store unavailable, allowing request for user {user_id} / tenant {tenant_id}: {e}")
            return RateLimitDecision(allowed=True)

        results = []
        for idx, window in enumerate(windows):
            current = int(replies[idx * 3])
            previous = int(replies[idx * 3 + 2] or 0)
            results.append(self._evaluate(window, now, current, previous))

        decision = self._decide(results)
        if not decision.allowed:
            await self._release(windows, now)
            logger.info(
                f"Rate limited user {user_id} / tenant {tenant_id} by {decision.limited_by}, "
                f"retry after {decision.retry_after_seconds}s"
            )
        return decision

    async def status(self, user_id: str, tenant_id: str, tier: str) -> RateLimitDecision:
        """Current standing without counting a request."""
        windows = self.windows_for(user_id, tenant_id, tier)
        now = self.clock()

        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for window in windows:
                    bucket = int(now // window.seconds)
                    pipe.get(self._key(window, bucket))
                    pipe.get(self._key(window, bucket - 1))
                replies = await pipe.execute()
        except STORE_ERRORS as e:
            logger.warning(f"Rate limit store unavailable for status of user {user_id}: {e}")
            return RateLimitDecision(allowed=True)

        results = []
        for idx, window in enumerate(windows):
            current = int(replies[idx * 2] or 0)
            previous = int(replies[idx * 2 + 1] or 0)
            # Evaluate as if one more request arrived
            result = self._evaluate(window, now, current + 1, previous)
            if result.allowed:
                result.remaining += 1
            results.append(result)
        return self._decide(results)

    async def reset_user(self, user_id: str) -> int:
        deleted = await self._delete_matching(f"{self.prefix}:user:*:{user_id}:*")
        logger.info(f"Reset rate limits for user {user_id}")
        return deleted

    async def reset_tenant(self, tenant_id: str) -> int:
        deleted = await self._delete_matching(f"{self.prefix}:tenant:*:{tenant_id}:*")
        logger.info(f"Reset rate limits for tenant {tenant_id}")
        return deleted

    def _evaluate(self, window: Window, now: float, current: int, previous: int) -> WindowResult:
        bucket_start = (now // window.seconds) * window.seconds
        elapsed = (now - bucket_start) / window.seconds
        weight = 1.0 - elapsed
        estimated = previous * weight + current

        if estimated <= window.limit:
            remaining = int(math.floor(window.limit - estimated))
            return WindowResult(window, True, max(remaining, 0), 0)

        # Wait until the previous bucket's weight decays enough, or the bucket rolls over
        if previous > 0 and current <= window.limit:
            needed = 1.0 - (window.limit - current) / previous
            wait = (needed - elapsed) * window.seconds
        else:
            wait = bucket_start + window.seconds - now
        return WindowResult(window, False, 0, max(1, int(math.ceil(wait))))

    @staticmethod
    def _decide(results: List[WindowResult]) -> RateLimitDecision:
        remaining = {f"{r.window.scope}_{r.window.name}": r.remaining for r in results}
        denied_user = [r for r in results if not r.allowed and r.window.scope == "user"]
        denied_tenant = [r for r in results if not r.allowed and r.window.scope == "tenant"]

        if denied_user:
            return RateLimitDecision(False, "user", max(r.retry_after_seconds for r in denied_user), remaining)
        if denied_tenant:
            return RateLimitDecision(False, "tenant", max(r.retry_after_seconds for r in denied_tenant), remaining)
        return RateLimitDecision(True, "none", 0, remaining)

    async def _release(self, windows: List[Window], now: float) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for window in windows:
                    pipe.decr(self._key(window, int(now // window.seconds)))
                await pipe.execute()
        except STORE_ERRORS as e:
            logger.warning(f"Could not release rate limit counters: {e}")

    async def _delete_matching(self, pattern: str) -> int:
        keys = [key async for key in self.client.scan_iter(match=pattern, count=100)]
        if not keys:
            return 0
        return await self.client.delete(*keys)


def format_rate_limit_message(decision: RateLimitDecision) -> Optional[str]:
    """User-facing explanation of a denial, or None when allowed."""
    if decision.allowed:
        return None

    if decision.limited_by == "user":
        return f"You're sending messages too quickly. Please try again in {decision.retry_after_seconds} seconds."

    if decision.limited_by == "tenant":
        hours = max(1, math.ceil(decision.retry_after_seconds / 3600))
        return (
            "Your instructor's account has reached its daily message limit. "
            f"This will reset in about {hours} hour{'s' if hours != 1 else ''}. "
            "Contact your instructor for more information."
        )

    return "Rate limit exceeded. Please try again later."
