"""
Azure Cost Management fetch client.

Authenticates a service principal with azure-identity and runs a daily
ActualCost query grouped by ServiceName against the subscription scope.
"""

from datetime import date, datetime, time, timezone
from typing import Any, Dict

import structlog
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.costmanagement.aio import CostManagementClient
from azure.mgmt.costmanagement.models import (
    QueryAggregation,
    QueryDataset,
    QueryDefinition,
    QueryGrouping,
    QueryTimePeriod,
)

from costsentry.core.exceptions import (
    AuthenticationError,
    ProviderRequestError,
    TransientFetchError,
)
from costsentry.schemas.costs import Account
from costsentry.services.fetch.base import FetchClient

logger = structlog.get_logger()


def build_query(period_start: date, period_end: date) -> QueryDefinition:
    return QueryDefinition(
        type="ActualCost",
        timeframe="Custom",
        time_period=QueryTimePeriod(
            from_property=datetime.combine(period_start, time.min, tzinfo=timezone.utc),
            to=datetime.combine(period_end, time.max, tzinfo=timezone.utc),
        ),
        dataset=QueryDataset(
            granularity="Daily",
            aggregation={"totalCost": QueryAggregation(name="PreTaxCost", function="Sum")},
            grouping=[QueryGrouping(type="Dimension", name="ServiceName")],
        ),
    )


class AzureFetchClient(FetchClient):
    provider_id = "azure"

    async def _query(self, client: CostManagementClient, scope: str, query: QueryDefinition) -> Dict[str, Any]:
        try:
            result = await client.query.usage(scope=scope, parameters=query)
        except ClientAuthenticationError as e:
            raise AuthenticationError("Azure rejected the service principal", details={"provider_id": "azure"}) from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientFetchError(f"Azure connection failed: {type(e).__name__}") from e
        except HttpResponseError as e:
            status = e.status_code
            if status in (401, 403):
                raise AuthenticationError(
                    f"Azure rejected the credentials (HTTP {status})", details={"provider_id": "azure"}
                ) from e
            if status is None or status == 429 or status >= 500:
                raise TransientFetchError(f"Azure Cost Management error (HTTP {status})", status_code=status) from e
            raise ProviderRequestError(f"Azure Cost Management error (HTTP {status})", status_code=status) from e
        return result.as_dict() if result is not None else {}

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        scope = f"/subscriptions/{credentials['subscription_id']}"
        query = build_query(period_start, period_end)
        async with ClientSecretCredential(
            tenant_id=credentials["tenant_id"],
            client_id=credentials["client_id"],
            client_secret=credentials["client_secret"],
        ) as credential:
            async with CostManagementClient(credential=credential) as client:
                raw = await self.call_with_retry(self._query, client, scope, query)

        logger.debug("azure_cost_query_fetched", account_id=account.id, rows=len(raw.get("rows") or []))
        return {"columns": raw.get("columns") or [], "rows": raw.get("rows") or []}
