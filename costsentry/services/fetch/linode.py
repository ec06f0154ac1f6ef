"""Linode (Akamai) account API: uninvoiced balance plus recent invoices."""

from datetime import date
from typing import Any, Dict

from costsentry.schemas.costs import Account
from costsentry.services.fetch.base import HttpFetchClient


class LinodeFetchClient(HttpFetchClient):
    provider_id = "linode"
    base_url = "https://api.linode.com"

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {credentials['api_token']}"}
        async with self.http_client(headers) as client:
            profile = await self.get_json(client, "/v4/account")
            invoices = ((await self.get_json(client, "/v4/account/invoices", params={"page_size": 25})) or {}).get("data") or []

            items = []
            if invoices:
                latest = max(invoices, key=lambda i: str(i.get("date") or ""))
                page = await self.get_json(client, f"/v4/account/invoices/{latest['id']}/items")
                items = (page or {}).get("data") or []

        return {"account": profile or {}, "invoices": invoices, "invoice_items": items}
