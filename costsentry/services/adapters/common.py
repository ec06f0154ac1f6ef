"""
Shared normalization helpers for provider adapters.

Adapters stay pure: they read the raw envelope a fetch client produced and feed
charges into a SnapshotBuilder, which enforces the canonical snapshot
invariants (non-negative amounts, credits split out, unique ascending days,
an "Other" bucket for unattributed spend).
"""

import calendar
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

import structlog

from costsentry.core.exceptions import NormalizationError
from costsentry.schemas.costs import (
    OTHER_SERVICE,
    SUM_TOLERANCE,
    DailyCost,
    NormalizedCostSnapshot,
    ServiceCost,
)

logger = structlog.get_logger()


def money(value: Any, field: str) -> float:
    """Parse a provider amount. Missing values are zero; garbage is a NormalizationError."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise NormalizationError(field)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError) as e:
        raise NormalizationError(field, f"Field '{field}' is not a number: {value!r}") from e


def parse_day(value: Any, field: str) -> Optional[date]:
    """Accepts date, datetime, 'YYYY-MM-DD', ISO timestamps, 'YYYYMMDD' strings or ints."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if text.isdigit() and len(text) == 8:
            return datetime.strptime(text, "%Y%m%d").date()
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise NormalizationError(field, f"Field '{field}' is not a date: {value!r}") from e


def parse_month(value: Any, field: str) -> Optional[date]:
    """'YYYY-MM' (or any date within the month) to the first day of that month."""
    if value is None or value == "":
        return None
    text = str(value).strip()
    if len(text) == 7:
        text = f"{text}-01"
    day = parse_day(text, field)
    return day.replace(day=1) if day else None


def list_field(payload: Mapping[str, Any], key: str, field: Optional[str] = None) -> List[Any]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise NormalizationError(field or key)
    return value


def dict_field(payload: Mapping[str, Any], key: str, field: Optional[str] = None) -> Dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise NormalizationError(field or key)
    return value


def ensure_payload(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise NormalizationError("<root>", "Raw payload must be a JSON object")
    return raw


def month_start(day: date) -> date:
    return day.replace(day=1)


def previous_month_start(day: date) -> date:
    return month_start(month_start(day) - timedelta(days=1))


def default_period_start(as_of: date) -> date:
    """Syncs cover last month plus the current month-to-date."""
    return previous_month_start(as_of)


def forecast_month_end(current_month_cost: float, as_of: date) -> float:
    """Project month-to-date spend at the current run rate to the end of the month."""
    days_elapsed = as_of.day
    days_in_month = calendar.monthrange(as_of.year, as_of.month)[1]
    if days_elapsed <= 0 or current_month_cost <= 0:
        return 0.0
    return round(current_month_cost / days_elapsed * days_in_month, 6)


def resolve_period(raw: Mapping[str, Any], as_of: date) -> date:
    start = parse_day(raw.get("period_start"), "period_start") or default_period_start(as_of)
    return min(start, as_of)


class SnapshotBuilder:
    """Accumulates charges and produces a NormalizedCostSnapshot that satisfies the canonical invariants."""

    def __init__(self, provider_id: str, account_id: str, period_start: date, as_of: date):
        self.provider_id = provider_id
        self.account_id = account_id
        self.period_start = period_start
        self.as_of = as_of
        self.current_start = month_start(as_of)
        self.previous_start = previous_month_start(as_of)

        self._daily: Dict[date, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._daily_has_services = False
        self._current_services: Dict[str, float] = defaultdict(float)
        self._previous_services: Dict[str, float] = defaultdict(float)
        self._current_total = 0.0
        self._previous_total = 0.0
        self._current_override: Optional[float] = None
        self._previous_override: Optional[float] = None
        self.credits = 0.0
        self.savings = 0.0
        self.skipped_out_of_range = 0

    def add_charge(self, day: Optional[date], amount: float, service: Optional[str] = None) -> None:
        """Record a dated charge. Negative amounts are credits/refunds."""
        if amount < 0:
            self.credits += -amount
            return
        if day is None or day < self.period_start or day > self.as_of:
            self.skipped_out_of_range += 1
            return
        name = (service or "").strip() or OTHER_SERVICE
        if service:
            self._daily_has_services = True
        self._daily[day][name] += amount
        if day >= self.current_start:
            self._current_services[name] += amount
            self._current_total += amount
        elif day >= self.previous_start:
            self._previous_services[name] += amount
            self._previous_total += amount

    def add_service_total(self, service: Optional[str], amount: float, previous: bool = False) -> None:
        """Record an undated month-level amount (invoice line items, pending charges)."""
        if amount < 0:
            self.credits += -amount
            return
        name = (service or "").strip() or OTHER_SERVICE
        if previous:
            self._previous_services[name] += amount
        else:
            self._current_services[name] += amount

    def add_credit(self, amount: float) -> None:
        self.credits += abs(amount)

    def set_month_totals(self, current: Optional[float] = None, previous: Optional[float] = None) -> None:
        """Authoritative month totals reported by the provider, when it has them."""
        if current is not None:
            if current < 0:
                self.credits += -current
                current = 0.0
            self._current_override = current
        if previous is not None:
            self._previous_override = max(previous, 0.0)

    def _services(self, current_month_cost: float) -> List[ServiceCost]:
        services = []
        for name, cost in self._current_services.items():
            if cost <= 0:
                continue
            previous = self._previous_services.get(name, 0.0)
            change = round((cost - previous) / previous * 100, 2) if previous > 0 else 0.0
            services.append(ServiceCost(name=name, cost=round(cost, 6), change_pct=change))

        gap = current_month_cost - sum(s.cost for s in services)
        if gap > SUM_TOLERANCE:
            other = next((s for s in services if s.name == OTHER_SERVICE), None)
            if other:
                other.cost = round(other.cost + gap, 6)
            else:
                services.append(ServiceCost(name=OTHER_SERVICE, cost=round(gap, 6)))

        services.sort(key=lambda s: s.cost, reverse=True)
        return services

    def _daily_costs(self, current_month_cost: float, synthesize: bool) -> List[DailyCost]:
        if synthesize and current_month_cost > 0 and not any(d >= self.current_start for d in self._daily):
            # Invoice-level providers: spread month-to-date spend evenly over elapsed days.
            start = max(self.current_start, self.period_start)
            days = (self.as_of - start).days + 1
            per_day = round(current_month_cost / days, 2)
            logger.debug("synthesizing_daily_costs", provider=self.provider_id, days=days, per_day=per_day)
            return [DailyCost(date=start + timedelta(days=i), cost=per_day) for i in range(days)]

        daily = []
        for day in sorted(self._daily):
            split = {name: round(cost, 6) for name, cost in self._daily[day].items()}
            daily.append(DailyCost(
                date=day,
                cost=round(sum(split.values()), 6),
                breakdown=split if self._daily_has_services else {},
            ))
        return daily

    def build(
        self,
        forecast: Optional[float] = None,
        synthesize_daily: bool = False,
        currency: str = "USD",
    ) -> NormalizedCostSnapshot:
        current = self._current_override if self._current_override is not None else self._current_total
        previous = self._previous_override if self._previous_override is not None else self._previous_total

        services = self._services(current)
        services_total = sum(s.cost for s in services)
        if services_total > current + SUM_TOLERANCE:
            # Line items are more complete than the reported total.
            current = services_total

        if forecast is None or forecast <= 0:
            forecast = forecast_month_end(current, self.as_of)

        now = datetime.now(timezone.utc)
        generated_at = now if now.date() == self.as_of else datetime.combine(self.as_of, time.min, tzinfo=timezone.utc)

        if self.skipped_out_of_range:
            logger.debug("adapter_rows_outside_period", provider=self.provider_id, skipped=self.skipped_out_of_range)

        return NormalizedCostSnapshot(
            account_id=self.account_id,
            provider_id=self.provider_id,
            period_start=self.period_start,
            current_month_cost=round(current, 6),
            last_month_cost=round(previous, 6),
            forecast_cost=round(max(forecast, 0.0), 6),
            credits=round(self.credits, 6),
            savings=round(max(self.savings, 0.0), 6),
            currency=currency or "USD",
            services=services,
            daily_costs=self._daily_costs(current, synthesize_daily),
            generated_at=generated_at,
        )
