"""Monthly message quota per plan."""

import math
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.storage.repositories import count_usage_since, sum_usage_since


def start_of_current_month(now: datetime | None = None) -> datetime:
    """First instant of the current month, server-local time."""
    now = now or datetime.now()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class PlanLimits:
    """Messages per month by plan. Unknown plans get the default plan's limit."""

    limits: dict[str, float] = field(
        default_factory=lambda: {"free": 50, "pro": 2000, "enterprise": math.inf}
    )
    default_plan: str = "free"

    @classmethod
    def from_settings(cls, settings) -> "PlanLimits":
        return cls(
            limits={
                "free": settings.free_plan_message_limit,
                "pro": settings.pro_plan_message_limit,
                "enterprise": math.inf,
            }
        )

    def limit_for(self, plan: str) -> float:
        if plan in self.limits:
            return self.limits[plan]
        return self.limits[self.default_plan]


@dataclass
class QuotaStatus:
    allowed: bool
    used: int
    limit: float
    plan: str

    def rejection_message(self) -> str:
        limit = "unlimited" if math.isinf(self.limit) else str(int(self.limit))
        return (
            f"You've reached your monthly message limit ({limit} messages on the "
            f"{self.plan} plan). Upgrade your plan at your dashboard to continue."
        )


class QuotaGate:
    """Compares current-month usage against the plan limit."""

    def __init__(self, plan_limits: PlanLimits | None = None):
        self.plan_limits = plan_limits or PlanLimits()

    async def check(
        self, db: AsyncSession, tenant_id: str, plan: str, now: datetime | None = None
    ) -> QuotaStatus:
        limit = self.plan_limits.limit_for(plan)
        used = await count_usage_since(db, tenant_id, start_of_current_month(now))
        # inf compares greater than every count, so enterprise never trips
        return QuotaStatus(allowed=used < limit, used=used, limit=limit, plan=plan)

    async def summary(self, db: AsyncSession, tenant_id: str, plan: str) -> dict:
        period_start = start_of_current_month()
        count, input_tokens, output_tokens = await sum_usage_since(db, tenant_id, period_start)
        limit = self.plan_limits.limit_for(plan)
        return {
            "message_count": count,
            "total_input_tokens": input_tokens,
            "total_output_tokens": output_tokens,
            "limit": None if math.isinf(limit) else int(limit),
            "plan": plan,
            "period_start": period_start.isoformat(),
        }
