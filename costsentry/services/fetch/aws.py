"""
AWS Cost Explorer fetch client (native async via aioboto3).

Cost Explorer is a global endpoint served from us-east-1. One call pulls daily
unblended cost grouped by service for the whole period; a second asks for the
forecast of the rest of the current month.
"""

from datetime import date, timedelta
from typing import Any, Dict, List

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from costsentry.core.exceptions import (
    AuthenticationError,
    ProviderRequestError,
    TransientFetchError,
)
from costsentry.schemas.costs import Account
from costsentry.services.adapters.common import month_start
from costsentry.services.fetch.base import FetchClient

logger = structlog.get_logger()

# Retries are owned by tenacity; botocore only gets socket timeouts.
BOTO_CONFIG = BotoConfig(read_timeout=30, connect_timeout=10, retries={"max_attempts": 1})

COST_EXPLORER_REGION = "us-east-1"
MAX_COST_EXPLORER_PAGES = 50

THROTTLE_CODES = {"Throttling", "ThrottlingException", "LimitExceededException", "RequestLimitExceeded"}
AUTH_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
}
# Forecasting is best-effort; Cost Explorer refuses it for new accounts.
FORECAST_UNAVAILABLE_CODES = {"DataUnavailableException", "ValidationException"}


def translate_client_error(e: ClientError) -> Exception:
    code = e.response.get("Error", {}).get("Code", "")
    status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    details = {"provider_id": "aws", "code": code}
    if code in AUTH_CODES or status in (401, 403):
        return AuthenticationError(f"AWS rejected the credentials ({code})", details=details)
    if code in THROTTLE_CODES or (status is not None and (status == 429 or status >= 500)):
        return TransientFetchError(f"AWS Cost Explorer error ({code})", status_code=status, details=details)
    return ProviderRequestError(f"AWS Cost Explorer error ({code})", status_code=status, details=details)


class AWSFetchClient(FetchClient):
    provider_id = "aws"

    def _session(self, credentials: Dict[str, Any]) -> aioboto3.Session:
        return aioboto3.Session(
            aws_access_key_id=credentials["access_key_id"],
            aws_secret_access_key=credentials["secret_access_key"],
            aws_session_token=credentials.get("session_token"),
            region_name=COST_EXPLORER_REGION,
        )

    async def _call(self, client, operation: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return await getattr(client, operation)(**kwargs)
        except ClientError as e:
            raise translate_client_error(e) from e
        except (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError) as e:
            raise TransientFetchError(f"AWS connection failed: {type(e).__name__}") from e

    async def _cost_and_usage(self, client, period_start: date, period_end: date) -> List[Dict[str, Any]]:
        params = {
            # End is exclusive.
            "TimePeriod": {"Start": period_start.isoformat(), "End": (period_end + timedelta(days=1)).isoformat()},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }
        results: List[Dict[str, Any]] = []
        for _ in range(MAX_COST_EXPLORER_PAGES):
            response = await self.call_with_retry(self._call, client, "get_cost_and_usage", **params)
            results.extend(response.get("ResultsByTime", []))
            token = response.get("NextPageToken")
            if not token:
                break
            params["NextPageToken"] = token
        return results

    async def _forecast(self, client, period_end: date) -> Dict[str, Any]:
        start = period_end + timedelta(days=1)
        end = month_start(period_end + timedelta(days=32))
        if start >= end:
            return {}
        try:
            response = await self.call_with_retry(
                self._call,
                client,
                "get_cost_forecast",
                TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
                Metric="UNBLENDED_COST",
                Granularity="MONTHLY",
            )
        except ProviderRequestError as e:
            if e.details.get("code") in FORECAST_UNAVAILABLE_CODES:
                logger.info("aws_forecast_unavailable", code=e.details.get("code"))
                return {}
            raise
        return {"Total": response.get("Total", {})}

    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        async with self._session(credentials).client("ce", config=BOTO_CONFIG) as client:
            results = await self._cost_and_usage(client, period_start, period_end)
            forecast = await self._forecast(client, period_end)

        logger.debug("aws_cost_explorer_fetched", account_id=account.id, periods=len(results))
        return {"ResultsByTime": results, "Forecast": forecast}
