"""
GCP fetch client over the BigQuery billing export.

GCP has no synchronous billing API; the standard setup exports billing data
to BigQuery. The BigQuery client is blocking, so queries run in a worker thread.
"""

import asyncio
import json
from datetime import date
from typing import Any, Dict, List

import structlog
from google.api_core import exceptions as gcp_exceptions
from google.cloud import bigquery
from google.oauth2 import service_account

from costsentry.core.exceptions import (
    AuthenticationError,
    ProviderRequestError,
    TransientFetchError,
)
from costsentry.schemas.costs import Account
from costsentry.services.fetch.base import FetchClient

logger = structlog.get_logger()

BILLING_QUERY = """
    SELECT
        service.description AS service,
        DATE(usage_start_time) AS usage_date,
        SUM(cost) AS cost,
        SUM(IFNULL((SELECT SUM(c.amount) FROM UNNEST(credits) c), 0)) AS credits,
        MAX(currency) AS currency
    FROM `{table}`
    WHERE DATE(usage_start_time) BETWEEN @start_date AND @end_date
    GROUP BY service, usage_date
    ORDER BY usage_date
"""

TRANSIENT_ERRORS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.DeadlineExceeded,
)


class GCPFetchClient(FetchClient):
    provider_id = "gcp"

    def _credentials(self, key: Any):
        try:
            info = json.loads(key) if isinstance(key, str) else dict(key)
            return service_account.Credentials.from_service_account_info(info)
        except (ValueError, TypeError, KeyError) as e:
            raise AuthenticationError(
                "GCP service account key is not valid", details={"provider_id": "gcp"}
            ) from e

    def _run_query(self, credentials: Dict[str, Any], period_start: date, period_end: date) -> List[Dict[str, Any]]:
        client = bigquery.Client(project=credentials["project_id"], credentials=self._credentials(credentials["service_account_key"]))
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("start_date", "DATE", period_start),
                bigquery.ScalarQueryParameter("end_date", "DATE", period_end),
            ]
        )
        try:
            rows = client.query(BILLING_QUERY.format(table=credentials["billing_table"]), job_config=job_config).result()
            return [dict(row.items()) for row in rows]
        finally:
            client.close()

    async def _query(self, credentials: Dict[str, Any], period_start: date, period_end: date) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._run_query, credentials, period_start, period_end)
        except (gcp_exceptions.Unauthorized, gcp_exceptions.Forbidden) as e:
            raise AuthenticationError("GCP rejected the service account", details={"provider_id": "gcp"}) from e
        except TRANSIENT_ERRORS as e:
            raise TransientFetchError(f"BigQuery unavailable: {type(e).__name__}") from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise ProviderRequestError(f"BigQuery query failed: {e.message}", status_code=e.code) from e

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        rows = await self.call_with_retry(self._query, credentials, period_start, period_end)
        logger.debug("gcp_billing_export_fetched", account_id=account.id, rows=len(rows))
        return {"rows": rows}
