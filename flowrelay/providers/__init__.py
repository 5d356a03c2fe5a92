"""Provider adapters for remote automation back-ends."""

from __future__ import annotations

from typing import Dict, Type

from ..errors import UnknownProviderError
from ..http import HttpClient
from ..persistence.repository import ConnectionStore
from .base import BaseProvider, ProviderAdapter
from .make import MakeProvider
from .n8n import N8nProvider
from .zapier import ZapierProvider

PROVIDERS: Dict[str, Type[BaseProvider]] = {
    N8nProvider.name: N8nProvider,
    MakeProvider.name: MakeProvider,
    ZapierProvider.name: ZapierProvider,
}


def get_provider(
    name: str, connections: ConnectionStore, http: HttpClient | None = None
) -> BaseProvider:
    """Build the adapter registered under ``name``.

    Raises:
        UnknownProviderError: If no adapter is registered for ``name``.
    """
    provider_cls = PROVIDERS.get((name or "").lower())
    if provider_cls is None:
        raise UnknownProviderError(name)
    return provider_cls(connections, http)


__all__ = [
    "BaseProvider",
    "MakeProvider",
    "N8nProvider",
    "PROVIDERS",
    "ProviderAdapter",
    "ZapierProvider",
    "get_provider",
]
