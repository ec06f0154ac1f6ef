"""
GCP billing export adapter.

Payload: rows from the BigQuery billing export query, one per (service, day):
``{"service": ..., "usage_date": ..., "cost": ..., "credits": ...}`` where
``credits`` is the (negative) sum of the row's credit amounts.
"""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.common import (
    SnapshotBuilder,
    list_field,
    money,
    parse_day,
    resolve_period,
)


def normalize_gcp(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("gcp", account_id, resolve_period(raw, as_of), as_of)
    currency = "USD"

    for row in list_field(raw, "rows"):
        if not isinstance(row, dict):
            continue
        day = parse_day(row.get("usage_date"), "rows[].usage_date")
        builder.add_charge(day, money(row.get("cost"), "rows[].cost"), row.get("service"))
        builder.add_credit(money(row.get("credits"), "rows[].credits"))
        if row.get("currency"):
            currency = str(row["currency"])

    return builder.build(currency=currency)
