"""
DigitalOcean billing adapter.

DigitalOcean only exposes invoice-level data: the month-to-date balance, past
invoices and the line items of the in-progress invoice preview. Daily costs
are synthesized from the month-to-date total.
"""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.common import (
    SnapshotBuilder,
    dict_field,
    list_field,
    money,
    parse_month,
    resolve_period,
)


def normalize_digitalocean(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("digitalocean", account_id, resolve_period(raw, as_of), as_of)

    balance = dict_field(raw, "balance")
    if "month_to_date_usage" in balance:
        builder.set_month_totals(current=money(balance.get("month_to_date_usage"), "balance.month_to_date_usage"))

    previous_total = None
    for invoice in list_field(raw, "invoices"):
        if not isinstance(invoice, dict):
            continue
        period = parse_month(invoice.get("invoice_period"), "invoices[].invoice_period")
        if period == builder.previous_start:
            previous_total = (previous_total or 0.0) + money(invoice.get("amount"), "invoices[].amount")
    builder.set_month_totals(previous=previous_total)

    for item in list_field(raw, "preview_items"):
        if not isinstance(item, dict):
            continue
        service = item.get("product") or item.get("group_description") or item.get("description")
        builder.add_service_total(service, money(item.get("amount"), "preview_items[].amount"))

    return builder.build(synthesize_daily=True)
