"""
Vultr billing adapter.

Current month spend comes from pending charges (itemised by product); Vultr
invoices at the start of each month for the month before.
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


def normalize_vultr(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("vultr", account_id, resolve_period(raw, as_of), as_of)

    account = dict_field(raw, "account")
    if "pending_charges" in account:
        builder.set_month_totals(current=money(account.get("pending_charges"), "account.pending_charges"))

    for charge in list_field(raw, "pending_charges"):
        if not isinstance(charge, dict):
            continue
        service = charge.get("product") or charge.get("description")
        builder.add_service_total(service, money(charge.get("total"), "pending_charges[].total"))

    previous_total = None
    for invoice in list_field(raw, "invoices"):
        if not isinstance(invoice, dict):
            continue
        issued = parse_day(invoice.get("date"), "invoices[].date")
        if issued and issued >= builder.current_start:
            previous_total = (previous_total or 0.0) + money(invoice.get("amount"), "invoices[].amount")
    builder.set_month_totals(previous=previous_total)

    return builder.build(synthesize_daily=True)
