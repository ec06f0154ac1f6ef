"""
IBM Cloud usage reports.

Exchanges the API key for an IAM bearer token, then pulls the account usage
summary for the current and previous billing months.
"""

from datetime import date
from typing import Any, Dict

from costsentry.core.exceptions import AuthenticationError
from costsentry.schemas.costs import Account
from costsentry.services.adapters.common import month_start, previous_month_start
from costsentry.services.fetch.base import HttpFetchClient

IAM_TOKEN_URL = "https://iam.cloud.ibm.com/identity/token"
BILLING_URL = "https://billing.cloud.ibm.com"


class IBMFetchClient(HttpFetchClient):
    provider_id = "ibm"
    base_url = BILLING_URL

    async def _access_token(self, client, api_key: str) -> str:
        body = await self.post_json(
            client,
            IAM_TOKEN_URL,
            data={"grant_type": "urn:ibm:params:oauth:grant-type:apikey", "apikey": api_key},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        token = (body or {}).get("access_token")
        if not token:
            raise AuthenticationError("IBM IAM did not issue an access token", details={"provider_id": "ibm"})
        return token

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        account_id = credentials["account_id"]
        async with self.http_client() as client:
            token = await self._access_token(client, credentials["api_key"])
            headers = {"Authorization": f"Bearer {token}"}
            reports = {}
            for key, month in (("current", month_start(period_end)), ("previous", previous_month_start(period_end))):
                reports[key] = await self.get_json(
                    client,
                    f"/v4/accounts/{account_id}/usage/{month:%Y-%m}",
                    headers=headers,
                )
        return {"current": reports["current"] or {}, "previous": reports["previous"] or {}}
