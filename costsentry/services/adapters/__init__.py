"""
Provider adapters: raw provider payload -> NormalizedCostSnapshot.

Adapters are pure functions of (raw, account_id, as_of). They never touch the
network or storage.
"""

from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.services.adapters.aws import normalize_aws
from costsentry.services.adapters.azure import normalize_azure
from costsentry.services.adapters.common import ensure_payload
from costsentry.services.adapters.digitalocean import normalize_digitalocean
from costsentry.services.adapters.gcp import normalize_gcp
from costsentry.services.adapters.ibm import normalize_ibm
from costsentry.services.adapters.linode import normalize_linode
from costsentry.services.adapters.vultr import normalize_vultr
from costsentry.services.providers.registry import get_provider

Adapter = Callable[[Dict[str, Any], str, date], NormalizedCostSnapshot]

ADAPTERS: Mapping[str, Adapter] = MappingProxyType({
    "aws": normalize_aws,
    "azure": normalize_azure,
    "gcp": normalize_gcp,
    "digitalocean": normalize_digitalocean,
    "linode": normalize_linode,
    "vultr": normalize_vultr,
    "ibm": normalize_ibm,
})


def normalize(
    provider_id: str,
    raw: Any,
    *,
    account_id: str,
    as_of: Optional[date] = None,
) -> NormalizedCostSnapshot:
    """
    Normalize a raw payload for any supported provider (id or alias).

    Raises UnsupportedProviderError for unknown providers and
    NormalizationError (naming the offending field) for malformed payloads.
    """
    spec = get_provider(provider_id)
    payload = ensure_payload(raw)
    day = as_of or datetime.now(timezone.utc).date()
    return ADAPTERS[spec.id](payload, account_id, day)


__all__ = ["ADAPTERS", "normalize"]
