"""
Canonical cost schemas - Normalization Layer

Every provider adapter produces a NormalizedCostSnapshot; everything downstream
(cache, persistence, baselines, anomaly detection) only ever sees this shape.
"""

from datetime import date, datetime, timezone
from typing import List, Dict, Optional

from pydantic import BaseModel, Field, model_validator

OTHER_SERVICE = "Other"

# Tolerance for "services sum to current month cost"
SUM_TOLERANCE = 0.01


class Account(BaseModel):
    """A user's connection to exactly one cloud provider. Credentials are resolved elsewhere."""
    id: str
    user_id: str
    provider_id: str
    name: str = ""
    is_active: bool = True
    last_synced_at: Optional[datetime] = None


class ServiceCost(BaseModel):
    """Month-to-date spend for one provider service."""
    name: str
    cost: float = Field(0.0, ge=0)
    change_pct: float = 0.0


class DailyCost(BaseModel):
    """Spend for a single day, optionally split by service."""
    date: date
    cost: float = Field(0.0, ge=0)
    breakdown: Dict[str, float] = Field(default_factory=dict)

    def service_costs(self, services: List[ServiceCost]) -> Dict[str, float]:
        """
        Per-service cost for this day.

        Uses the provider's own breakdown when present, otherwise apportions the
        day's total by each service's share of month-to-date spend.
        """
        if self.breakdown:
            return dict(self.breakdown)
        total = sum(s.cost for s in services)
        if total <= 0:
            return {}
        return {s.name: self.cost * s.cost / total for s in services if s.cost > 0}


class NormalizedCostSnapshot(BaseModel):
    """One normalized cost record for an account+provider+sync."""
    account_id: str
    provider_id: str
    period_start: date
    current_month_cost: float = Field(0.0, ge=0)
    last_month_cost: float = Field(0.0, ge=0)
    forecast_cost: float = Field(0.0, ge=0)
    credits: float = Field(0.0, ge=0)
    savings: float = Field(0.0, ge=0)
    currency: str = "USD"
    services: List[ServiceCost] = Field(default_factory=list)
    daily_costs: List[DailyCost] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_daily_series(self) -> "NormalizedCostSnapshot":
        dates = [d.date for d in self.daily_costs]
        if any(a >= b for a, b in zip(dates, dates[1:])):
            raise ValueError("daily_costs dates must be unique and ascending")
        if dates and dates[0] < self.period_start:
            raise ValueError("daily_costs must not start before period_start")
        if dates and dates[-1] > self.generated_at.date():
            raise ValueError("daily_costs must not extend past generation time")
        return self

    @property
    def services_total(self) -> float:
        return sum(s.cost for s in self.services)

    def day(self, day: date) -> Optional[DailyCost]:
        for entry in self.daily_costs:
            if entry.date == day:
                return entry
        return None
