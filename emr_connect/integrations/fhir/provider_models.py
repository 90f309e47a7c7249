"""
EHR Provider Descriptors

Immutable provider configuration: OAuth endpoints, client registration,
declared capabilities and the quirks bundle that encodes each provider's
deviations from the nominal SMART/FHIR contract.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .exceptions import UnresolvedPlaceholderError

DEFAULT_ACCEPT_HEADER = "application/fhir+json"

TOKEN_PATIENT_LOCATION = "token.patient"
ID_TOKEN_LOCATION_PREFIX = "id_token."

PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z0-9_]+)\}")


@dataclass(frozen=True)
class OAuthSettings:
    """OAuth flow options"""

    uses_pkce: bool = True
    response_type: str = "code"


@dataclass(frozen=True)
class ProviderCapabilities:
    """What the provider declares it supports"""

    # None means "not declared", every resource type is assumed supported
    supported_resource_types: Optional[Tuple[str, ...]] = None
    supports_refresh: bool = False


@dataclass(frozen=True)
class ProviderQuirks:
    """Declarative provider deviations, consulted generically by the clients"""

    accept_header: str = DEFAULT_ACCEPT_HEADER
    # "token.patient" or "id_token.<claim path>"
    patient_id_location: str = TOKEN_PATIENT_LOCATION
    not_found_status_codes: FrozenSet[int] = frozenset()
    filter_results_by_type: bool = False
    requires_date_filter: Mapping[str, bool] = field(default_factory=dict)
    url_placeholders: Mapping[str, str] = field(default_factory=dict)
    custom_headers: Mapping[str, str] = field(default_factory=dict)
    default_search_params: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    default_sort: Mapping[str, str] = field(default_factory=lambda: {"Observation": "-date"})
    supports_pagination: bool = False

    @property
    def patient_id_from_id_token(self) -> bool:
        return self.patient_id_location.startswith(ID_TOKEN_LOCATION_PREFIX)

    @property
    def id_token_claim_path(self) -> Optional[str]:
        if not self.patient_id_from_id_token:
            return None
        return self.patient_id_location[len(ID_TOKEN_LOCATION_PREFIX) :]


@dataclass(frozen=True)
class ProviderDescriptor:
    """SMART on FHIR provider configuration"""

    id: str
    name: str
    authorization_endpoint: str
    token_endpoint: str
    resource_base_url: str
    client_id: str = ""
    redirect_uri: str = ""
    scopes: Tuple[str, ...] = ()
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    quirks: ProviderQuirks = field(default_factory=ProviderQuirks)
    revocation_endpoint: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)

    @property
    def endpoint_urls(self) -> Tuple[str, str, str]:
        return (self.authorization_endpoint, self.token_endpoint, self.resource_base_url)

    def unresolved_placeholders(self) -> set:
        """Placeholder names still present in any endpoint URL"""
        names = set()
        for url in self.endpoint_urls:
            names.update(PLACEHOLDER_PATTERN.findall(url))
        return names

    def ensure_resolved(self) -> "ProviderDescriptor":
        """Raise if the descriptor cannot be used to issue requests"""
        missing = self.unresolved_placeholders()
        if missing:
            raise UnresolvedPlaceholderError(self.id, list(missing))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "resource_base_url": self.resource_base_url,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.scopes),
            "uses_pkce": self.oauth.uses_pkce,
            "supports_refresh": self.capabilities.supports_refresh,
        }


__all__ = [
    "DEFAULT_ACCEPT_HEADER",
    "TOKEN_PATIENT_LOCATION",
    "OAuthSettings",
    "ProviderCapabilities",
    "ProviderQuirks",
    "ProviderDescriptor",
]
