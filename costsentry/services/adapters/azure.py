"""
Azure Cost Management adapter.

Payload: a Cost Management query result with ``columns``/``rows``, either at the
top level (SDK ``as_dict()``) or nested under ``properties`` (REST response).
Columns are located by name because their order follows the query definition.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from costsentry.core.exceptions import NormalizationError
from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.common import (
    SnapshotBuilder,
    dict_field,
    list_field,
    money,
    parse_day,
    resolve_period,
)

COST_COLUMNS = ("PreTaxCost", "Cost", "CostUSD", "totalCost")
SERVICE_COLUMNS = ("ServiceName", "MeterCategory")
DATE_COLUMNS = ("UsageDate", "BillingMonth")


def _column_index(columns: List[Any], candidates) -> Optional[int]:
    names = [str(c.get("name", "")) if isinstance(c, dict) else "" for c in columns]
    lowered = [n.lower() for n in names]
    for candidate in candidates:
        if candidate.lower() in lowered:
            return lowered.index(candidate.lower())
    return None


def normalize_azure(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("azure", account_id, resolve_period(raw, as_of), as_of)

    body = dict_field(raw, "properties") or raw
    columns = list_field(body, "columns")
    rows = list_field(body, "rows")

    cost_idx = _column_index(columns, COST_COLUMNS)
    service_idx = _column_index(columns, SERVICE_COLUMNS)
    date_idx = _column_index(columns, DATE_COLUMNS)
    currency_idx = _column_index(columns, ("Currency",))

    if rows and cost_idx is None:
        raise NormalizationError("columns", "Azure result has rows but no cost column")

    currency = "USD"
    for row in rows:
        if not isinstance(row, list):
            raise NormalizationError("rows")
        amount = money(row[cost_idx], "rows[].cost") if cost_idx < len(row) else 0.0
        service = row[service_idx] if service_idx is not None and service_idx < len(row) else None
        day = parse_day(row[date_idx], "rows[].UsageDate") if date_idx is not None and date_idx < len(row) else None
        if currency_idx is not None and currency_idx < len(row) and row[currency_idx]:
            currency = str(row[currency_idx])
        builder.add_charge(day, amount, str(service) if service else None)

    return builder.build(currency=currency)
