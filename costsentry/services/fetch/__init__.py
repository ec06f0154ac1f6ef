"""Fetch clients, one per provider, selected by provider id."""

from types import MappingProxyType
from typing import Dict, Mapping, Optional, Type

from costsentry.core.config import Settings
from costsentry.services.fetch.aws import AWSFetchClient
from costsentry.services.fetch.azure import AzureFetchClient
from costsentry.services.fetch.base import FetchClient, HttpFetchClient, validate_credentials
from costsentry.services.fetch.digitalocean import DigitalOceanFetchClient
from costsentry.services.fetch.gcp import GCPFetchClient
from costsentry.services.fetch.ibm import IBMFetchClient
from costsentry.services.fetch.linode import LinodeFetchClient
from costsentry.services.fetch.vultr import VultrFetchClient

FETCH_CLIENTS: Mapping[str, Type[FetchClient]] = MappingProxyType({
    "aws": AWSFetchClient,
    "azure": AzureFetchClient,
    "gcp": GCPFetchClient,
    "digitalocean": DigitalOceanFetchClient,
    "linode": LinodeFetchClient,
    "vultr": VultrFetchClient,
    "ibm": IBMFetchClient,
})


def build_fetch_clients(settings: Optional[Settings] = None) -> Dict[str, FetchClient]:
    """One client (and so one rate limiter) per provider."""
    return {provider_id: cls(settings) for provider_id, cls in FETCH_CLIENTS.items()}


__all__ = [
    "FETCH_CLIENTS",
    "FetchClient",
    "HttpFetchClient",
    "build_fetch_clients",
    "validate_credentials",
]
