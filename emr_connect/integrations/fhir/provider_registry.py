"""
EHR Provider Registry

Holds provider descriptors keyed by id and resolves URL placeholders
(e.g. tenant identifiers) at lookup time.
"""

import dataclasses
from typing import Dict, Iterable, List, Mapping, Optional

from emr_connect.core.logging import get_logger

from .exceptions import ProviderNotFoundError
from .provider_models import ProviderDescriptor

logger = get_logger(__name__)


class ProviderRegistry:
    """
    In-memory provider registry.

    Usage:
        registry = ProviderRegistry()
        registry.register(descriptor)

        provider = registry.resolve("cerner")  # placeholders substituted
    """

    def __init__(self, providers: Optional[Iterable[ProviderDescriptor]] = None):
        self._providers: Dict[str, ProviderDescriptor] = {}
        if providers:
            self.register_all(providers)

    def register(self, descriptor: ProviderDescriptor) -> None:
        """Register a provider, replacing any existing one with the same id"""
        if descriptor.id in self._providers:
            logger.warning("provider_overwritten", provider_id=descriptor.id)
        self._providers[descriptor.id] = descriptor

    def register_all(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def get(self, provider_id: str) -> ProviderDescriptor:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def list(self) -> List[ProviderDescriptor]:
        return list(self._providers.values())

    def provider_ids(self) -> List[str]:
        return list(self._providers.keys())

    def remove(self, provider_id: str) -> bool:
        return self._providers.pop(provider_id, None) is not None

    def clear(self) -> None:
        self._providers.clear()

    def resolve(self, provider_id: str) -> ProviderDescriptor:
        """
        Look up a provider with its own URL placeholders substituted.

        Raises:
            ProviderNotFoundError: unknown id
            UnresolvedPlaceholderError: a placeholder has no value
        """
        provider = self.get(provider_id)
        resolved = self.resolve_placeholders(provider, provider.quirks.url_placeholders)
        return resolved.ensure_resolved()

    @staticmethod
    def resolve_placeholders(
        descriptor: ProviderDescriptor,
        values: Mapping[str, str],
    ) -> ProviderDescriptor:
        """
        Replace every {KEY} occurrence in the three endpoint URLs.

        Pure function: returns a new descriptor and leaves the registry
        untouched. Empty values are skipped so the placeholder stays
        detectable.
        """
        if not values:
            return descriptor

        urls = {
            "authorization_endpoint": descriptor.authorization_endpoint,
            "token_endpoint": descriptor.token_endpoint,
            "resource_base_url": descriptor.resource_base_url,
        }
        for key, value in values.items():
            if not value:
                continue
            placeholder = "{" + key + "}"
            urls = {name: url.replace(placeholder, value) for name, url in urls.items()}

        return dataclasses.replace(descriptor, **urls)

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers


# ==============================================================================
# Default Instance
# ==============================================================================


_provider_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get or create the process-wide default registry"""
    global _provider_registry

    if _provider_registry is None:
        _provider_registry = ProviderRegistry()

    return _provider_registry


__all__ = [
    "ProviderRegistry",
    "get_provider_registry",
]
