"""
Credential resolution.

The engine never stores secrets; it asks a CredentialsProvider for the
provider-specific key/value pairs of an account at sync time.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from costsentry.core.exceptions import AuthenticationError
from costsentry.schemas.costs import Account


class CredentialsProvider(ABC):

    @abstractmethod
    async def get_credentials(self, account: Account) -> Dict[str, Any]:
        """Raise AuthenticationError when no credentials are available."""


class StaticCredentialsProvider(CredentialsProvider):
    """Credentials held in memory, keyed by account id."""

    def __init__(self, credentials: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._credentials: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (credentials or {}).items()}

    def set(self, account_id: str, credentials: Mapping[str, Any]) -> None:
        self._credentials[account_id] = dict(credentials)

    async def get_credentials(self, account: Account) -> Dict[str, Any]:
        creds = self._credentials.get(account.id)
        if creds is None:
            raise AuthenticationError(
                f"No credentials configured for account {account.id}",
                details={"account_id": account.id, "provider_id": account.provider_id},
            )
        return dict(creds)
