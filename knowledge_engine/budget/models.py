"""Budget state and alert models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, Field, computed_field

BudgetStatus = Literal["under_budget", "near_limit", "over_budget"]

NEAR_LIMIT_THRESHOLD = 0.8
OVER_BUDGET_THRESHOLD = 1.0
ALERT_THRESHOLDS: tuple[float, ...] = (NEAR_LIMIT_THRESHOLD, OVER_BUDGET_THRESHOLD)


def month_key(moment: datetime) -> str:
    """Calendar month (UTC) as ``YYYY-MM``."""
    return moment.astimezone(UTC).strftime("%Y-%m")


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Start of the UTC month containing *moment* and start of the next one."""
    moment = moment.astimezone(UTC)
    start = datetime(moment.year, moment.month, 1, tzinfo=UTC)
    following = (start + timedelta(days=32)).replace(day=1)
    return start, following


def hour_start(moment: datetime) -> datetime:
    return moment.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def day_start(moment: datetime) -> datetime:
    return moment.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)


def _window_reason(name: str, spend: float, limit: float, estimate: float) -> str | None:
    if limit <= 0:
        return None
    if spend >= limit or spend + estimate > limit:
        return f"{name} limit reached: ${spend:.4f} of ${limit:.2f}"
    return None


class BudgetState(BaseModel):
    """Per-owner spend, derived from the ledger.

    The monthly budget drives ``status`` and the threshold alerts. The
    hourly and daily windows are a safety net against runaway loops; a
    window limit of 0 means that window is not enforced.
    """

    owner_id: str
    month: str
    monthly_budget_usd: float
    current_spend_usd: float
    alert_thresholds_crossed: list[float] = Field(default_factory=list)

    hourly_spend_usd: float = 0.0
    hourly_budget_usd: float = 0.0
    daily_spend_usd: float = 0.0
    daily_budget_usd: float = 0.0
    daily_total_spend_usd: float = 0.0
    daily_total_budget_usd: float = 0.0

    days_into_month: int = 1
    days_in_month: int = 30

    @computed_field
    @property
    def status(self) -> BudgetStatus:
        if self.current_spend_usd >= self.monthly_budget_usd * OVER_BUDGET_THRESHOLD:
            return "over_budget"
        if self.current_spend_usd >= self.monthly_budget_usd * NEAR_LIMIT_THRESHOLD:
            return "near_limit"
        return "under_budget"

    @computed_field
    @property
    def percentage_used(self) -> float:
        if self.monthly_budget_usd <= 0:
            return 100.0
        return round(self.current_spend_usd / self.monthly_budget_usd * 100, 2)

    @computed_field
    @property
    def remaining_usd(self) -> float:
        return max(0.0, self.monthly_budget_usd - self.current_spend_usd)

    @computed_field
    @property
    def projected_monthly_usd(self) -> float:
        """Month-end spend if the daily average so far continues."""
        daily_average = self.current_spend_usd / max(1, self.days_into_month)
        return round(daily_average * self.days_in_month, 4)

    def denial_reason(self, estimated_cost_usd: float = 0.0) -> str | None:
        """Why a call costing *estimated_cost_usd* should not run, or None.

        Windows are checked shortest first, so the reason names the tightest
        limit that was hit.
        """
        estimate = max(0.0, estimated_cost_usd)
        for name, spend, limit in (
            ("hourly", self.hourly_spend_usd, self.hourly_budget_usd),
            ("daily", self.daily_spend_usd, self.daily_budget_usd),
            ("daily total", self.daily_total_spend_usd, self.daily_total_budget_usd),
        ):
            reason = _window_reason(name, spend, limit, estimate)
            if reason:
                return reason
        if self.status == "over_budget":
            return (
                f"monthly budget exhausted: ${self.current_spend_usd:.4f} "
                f"of ${self.monthly_budget_usd:.2f}"
            )
        if self.current_spend_usd + estimate > self.monthly_budget_usd:
            return f"estimate ${estimate:.4f} would exceed remaining ${self.remaining_usd:.4f}"
        return None


class BudgetAlert(BaseModel):
    """Emitted once per owner, month and threshold."""

    owner_id: str
    month: str
    threshold: float
    current_spend_usd: float
    monthly_budget_usd: float

    @property
    def kind(self) -> str:
        return "exceeded" if self.threshold >= OVER_BUDGET_THRESHOLD else "warning"
