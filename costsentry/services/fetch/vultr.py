"""Vultr billing API: pending charges and invoice history."""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import Account
from costsentry.services.fetch.base import HttpFetchClient


class VultrFetchClient(HttpFetchClient):
    provider_id = "vultr"
    base_url = "https://api.vultr.com"

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {credentials['api_key']}"}
        async with self.http_client(headers) as client:
            profile = await self.get_json(client, "/v2/account")
            pending = await self.get_json(client, "/v2/billing/pending-charges")
            invoices = await self.get_json(client, "/v2/billing/invoices", params={"per_page": 25})

        return {
            "account": (profile or {}).get("account") or {},
            "pending_charges": (pending or {}).get("pending_charges") or [],
            "invoices": (invoices or {}).get("billing_invoices") or [],
        }
