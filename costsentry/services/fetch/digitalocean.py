"""DigitalOcean billing API (balance, invoices and the in-progress invoice preview)."""

from datetime import date
from typing import Any, Dict

import structlog

from costsentry.schemas.costs import Account
from costsentry.services.fetch.base import HttpFetchClient

logger = structlog.get_logger()


class DigitalOceanFetchClient(HttpFetchClient):
    provider_id = "digitalocean"
    base_url = "https://api.digitalocean.com"

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {credentials['api_token']}"}
        async with self.http_client(headers) as client:
            balance = await self.get_json(client, "/v2/customers/my/balance")
            listing = await self.get_json(client, "/v2/customers/my/invoices", params={"per_page": 24})

            preview_items = []
            preview = (listing or {}).get("invoice_preview") or {}
            if preview.get("invoice_uuid"):
                detail = await self.get_json(client, f"/v2/customers/my/invoices/{preview['invoice_uuid']}")
                preview_items = (detail or {}).get("invoice_items") or []

        logger.debug("digitalocean_fetched", account_id=account.id, preview_items=len(preview_items))
        return {
            "balance": balance or {},
            "invoices": (listing or {}).get("invoices") or [],
            "preview_items": preview_items,
        }
