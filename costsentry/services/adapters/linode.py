"""
Linode (Akamai) billing adapter.

Linode reports the uninvoiced month-to-date balance and issues invoices on
the first of each month for the month before. Service attribution for the
current month follows the item mix of the most recent invoice.
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


def normalize_linode(raw: Dict[str, Any], account_id: str, as_of: date) -> NormalizedCostSnapshot:
    builder = SnapshotBuilder("linode", account_id, resolve_period(raw, as_of), as_of)

    account = dict_field(raw, "account")
    current = money(account.get("balance_uninvoiced"), "account.balance_uninvoiced")
    builder.set_month_totals(current=current)

    previous_total = None
    for invoice in list_field(raw, "invoices"):
        if not isinstance(invoice, dict):
            continue
        issued = parse_day(invoice.get("date"), "invoices[].date")
        # An invoice issued this month bills last month's usage.
        if issued and issued >= builder.current_start:
            previous_total = (previous_total or 0.0) + money(invoice.get("total"), "invoices[].total")
    builder.set_month_totals(previous=previous_total)

    items = [i for i in list_field(raw, "invoice_items") if isinstance(i, dict)]
    item_amounts = {}
    for item in items:
        name = item.get("type") or item.get("label")
        amount = money(item.get("amount"), "invoice_items[].amount")
        if amount < 0:
            builder.add_credit(amount)
            continue
        key = str(name).title() if name else None
        item_amounts[key] = item_amounts.get(key, 0.0) + amount
        builder.add_service_total(key, amount, previous=True)

    mix_total = sum(item_amounts.values())
    if mix_total > 0 and current > 0:
        for name, amount in item_amounts.items():
            builder.add_service_total(name, current * amount / mix_total)

    return builder.build(synthesize_daily=True)
