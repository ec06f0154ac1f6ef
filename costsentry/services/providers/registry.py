"""
Supported cloud providers.

The registry is built once at import and is read-only afterwards. Adding a
provider means adding an entry here plus its adapter and fetch client.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from costsentry.core.exceptions import UnsupportedProviderError


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    name: str
    aliases: Tuple[str, ...] = ()
    # False for providers that only expose invoice-level (monthly) totals.
    daily_granularity: bool = True
    # Credential keys the fetch client requires.
    credential_fields: Tuple[str, ...] = ()


_PROVIDERS = (
    ProviderSpec("aws", "Amazon Web Services", ("amazon",), True,
                 ("access_key_id", "secret_access_key")),
    ProviderSpec("azure", "Microsoft Azure", ("microsoft", "msft"), True,
                 ("tenant_id", "client_id", "client_secret", "subscription_id")),
    ProviderSpec("gcp", "Google Cloud Platform", ("google",), True,
                 ("project_id", "billing_table", "service_account_key")),
    ProviderSpec("digitalocean", "DigitalOcean", ("do",), False, ("api_token",)),
    ProviderSpec("linode", "Linode (Akamai)", ("akamai",), False, ("api_token",)),
    ProviderSpec("vultr", "Vultr", (), False, ("api_key",)),
    ProviderSpec("ibm", "IBM Cloud", ("ibmcloud", "softlayer"), False, ("api_key", "account_id")),
)

PROVIDERS: Mapping[str, ProviderSpec] = MappingProxyType({p.id: p for p in _PROVIDERS})

_LOOKUP: Mapping[str, ProviderSpec] = MappingProxyType({
    **{p.id: p for p in _PROVIDERS},
    **{alias: p for p in _PROVIDERS for alias in p.aliases},
})


def find_provider(provider_id: Optional[str]) -> Optional[ProviderSpec]:
    """Look up a provider by id or alias (case-insensitive)."""
    if not provider_id:
        return None
    return _LOOKUP.get(provider_id.strip().lower())


def get_provider(provider_id: Optional[str]) -> ProviderSpec:
    spec = find_provider(provider_id)
    if spec is None:
        raise UnsupportedProviderError(str(provider_id))
    return spec


def is_provider_supported(provider_id: Optional[str]) -> bool:
    return find_provider(provider_id) is not None
