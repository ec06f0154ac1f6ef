"""
IBM Cloud usage-report adapter.

Payload: account usage reports for the current and previous billing month
(``current``/``previous``), each with a ``resources`` list. Non-billable cost
(free tier, included allowances) is reported as savings.
"""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.common import (
    SnapshotBuilder,
    dict_field,
    list_field,
    money,
    resolve_period,
)


def normalize_ibm(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("ibm", account_id, resolve_period(raw, as_of), as_of)
    currency = "USD"
    totals = {"current": 0.0, "previous": 0.0}

    for key in ("current", "previous"):
        report = dict_field(raw, key)
        previous = key == "previous"
        if report.get("currency_code"):
            currency = str(report["currency_code"])
        for resource in list_field(report, "resources", f"{key}.resources"):
            if not isinstance(resource, dict):
                continue
            name = resource.get("resource_name") or resource.get("resource_id")
            billable = money(resource.get("billable_cost"), f"{key}.resources[].billable_cost")
            builder.add_service_total(name, billable, previous=previous)
            totals[key] += max(billable, 0.0)
            if not previous:
                builder.savings += max(
                    money(resource.get("non_billable_cost"), f"{key}.resources[].non_billable_cost"), 0.0
                )

    builder.set_month_totals(current=totals["current"], previous=totals["previous"])
    builder.add_credit(money(raw.get("credits"), "credits"))

    return builder.build(synthesize_daily=True, currency=currency)
