"""
AWS Cost Explorer adapter.

Payload: the GetCostAndUsage response (DAILY granularity, grouped by SERVICE),
plus an optional GetCostForecast result under ``Forecast``.
"""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.common import (
    SnapshotBuilder,
    dict_field,
    list_field,
    money,
    parse_day,
    resolve_period,
)

# Preferred metric first; Cost Explorer only returns the metrics that were requested.
METRIC_PREFERENCE = ("UnblendedCost", "BlendedCost", "AmortizedCost", "NetUnblendedCost")


def _metric_amount(metrics: Dict[str, Any], field: str) -> float:
    for name in METRIC_PREFERENCE:
        metric = metrics.get(name)
        if isinstance(metric, dict):
            return money(metric.get("Amount"), f"{field}.{name}.Amount")
    return 0.0


def normalize_aws(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("aws", account_id, resolve_period(raw, as_of), as_of)

    for result in list_field(raw, "ResultsByTime"):
        if not isinstance(result, dict):
            continue
        period = dict_field(result, "TimePeriod", "ResultsByTime[].TimePeriod")
        day = parse_day(period.get("Start"), "ResultsByTime[].TimePeriod.Start")

        groups = list_field(result, "Groups", "ResultsByTime[].Groups")
        if groups:
            for group in groups:
                if not isinstance(group, dict):
                    continue
                keys = group.get("Keys") or []
                service = keys[0] if keys else None
                metrics = dict_field(group, "Metrics", "ResultsByTime[].Groups[].Metrics")
                builder.add_charge(day, _metric_amount(metrics, "ResultsByTime[].Groups[].Metrics"), service)
        else:
            total = dict_field(result, "Total", "ResultsByTime[].Total")
            builder.add_charge(day, _metric_amount(total, "ResultsByTime[].Total"))

    forecast = dict_field(raw, "Forecast")
    forecast_total = dict_field(forecast, "Total", "Forecast.Total")
    forecast_amount = money(forecast_total.get("Amount"), "Forecast.Total.Amount") if forecast_total else None
    if forecast_amount is not None:
        # Cost Explorer forecasts the remainder of the month; add spend to date.
        snapshot = builder.build()
        return snapshot.model_copy(update={"forecast_cost": round(snapshot.current_month_cost + max(forecast_amount, 0.0), 6)})

    return builder.build()
