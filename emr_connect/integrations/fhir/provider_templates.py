"""
EHR Provider Templates

Base configurations for known EHR vendors, without client credentials.
Hosts supply client id, redirect URI and any URL placeholder values
(e.g. Cerner's TENANT_ID) and register the result.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from emr_connect.core.config import Settings
from emr_connect.core.logging import get_logger

from .provider_models import (
    OAuthSettings,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderQuirks,
)
from .provider_registry import ProviderRegistry, get_provider_registry

logger = get_logger(__name__)


COMMON_RESOURCE_TYPES = (
    "Patient",
    "Observation",
    "MedicationRequest",
    "Appointment",
    "Encounter",
    "Procedure",
)


def _patient_read_scopes(*extra: str) -> tuple:
    return tuple(f"patient/{resource}.read" for resource in COMMON_RESOURCE_TYPES) + extra


EPIC_TEMPLATE = ProviderDescriptor(
    id="epic",
    name="Epic Systems",
    authorization_endpoint="https://fhir.epic.com/interconnect-fhir-oauth/oauth2/authorize",
    token_endpoint="https://fhir.epic.com/interconnect-fhir-oauth/oauth2/token",
    resource_base_url="https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4",
    scopes=("openid", "fhirUser"),
    oauth=OAuthSettings(uses_pkce=True),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(
        filter_results_by_type=True,
        supports_pagination=True,
        default_search_params={
            "MedicationRequest": {"status": "active"},
            "Appointment": {"status": "booked"},
        },
    ),
)

CERNER_TEMPLATE = ProviderDescriptor(
    id="cerner",
    name="Cerner (Oracle Health)",
    authorization_endpoint=(
        "https://authorization.cerner.com/tenants/{TENANT_ID}"
        "/protocols/oauth2/profiles/smart-v1/personas/patient/authorize"
    ),
    token_endpoint=(
        "https://authorization.cerner.com/tenants/{TENANT_ID}"
        "/hosts/fhir-myrecord.cerner.com/protocols/oauth2/profiles/smart-v1/token"
    ),
    resource_base_url="https://fhir-myrecord.cerner.com/r4/{TENANT_ID}",
    scopes=_patient_read_scopes("online_access", "openid", "profile", "launch/patient"),
    oauth=OAuthSettings(uses_pkce=False),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(
        accept_header="application/json",
        filter_results_by_type=True,
        supports_pagination=True,
        url_placeholders={"TENANT_ID": ""},  # Must be provided by the host
    ),
)

ALLSCRIPTS_TEMPLATE = ProviderDescriptor(
    id="allscripts",
    name="Allscripts",
    authorization_endpoint="https://cloud.unitysandbox.com/oauth/authorize",
    token_endpoint="https://cloud.unitysandbox.com/oauth/token",
    resource_base_url="https://cloud.unitysandbox.com/fhir",
    scopes=_patient_read_scopes("launch/patient", "online_access"),
    oauth=OAuthSettings(uses_pkce=False),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=False,
    ),
    quirks=ProviderQuirks(filter_results_by_type=True),
)

ATHENA_TEMPLATE = ProviderDescriptor(
    id="athena",
    name="Athena Health",
    authorization_endpoint="https://api.preview.platform.athenahealth.com/oauth2/v1/authorize",
    token_endpoint="https://api.preview.platform.athenahealth.com/oauth2/v1/token",
    resource_base_url="https://api.preview.platform.athenahealth.com/fhir/r4",
    scopes=(
        "patient/Patient.read",
        "patient/AllergyIntolerance.read",
        "patient/CarePlan.read",
        "patient/CareTeam.read",
        "patient/Condition.read",
        "patient/Device.read",
        "patient/DiagnosticReport.read",
        "patient/DocumentReference.read",
        "patient/Encounter.read",
        "patient/Goal.read",
        "patient/Immunization.read",
        "patient/MedicationRequest.read",
        "patient/Observation.read",
        "patient/Procedure.read",
        "patient/Provenance.read",
        "openid",
        "fhirUser",
        "launch/patient",
        "offline_access",
    ),
    oauth=OAuthSettings(uses_pkce=True),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(
        patient_id_location="id_token.fhirUser",
        # Athena answers 403 for resources that simply do not exist
        not_found_status_codes=frozenset({403}),
        filter_results_by_type=True,
        supports_pagination=True,
        requires_date_filter={"Appointment": False},
    ),
)

NEXTGEN_TEMPLATE = ProviderDescriptor(
    id="nextgen",
    name="NextGen Healthcare",
    authorization_endpoint="https://api.nextgen.com/fhir/oauth2/authorize",
    token_endpoint="https://api.nextgen.com/fhir/oauth2/token",
    resource_base_url="https://api.nextgen.com/fhir/api/FHIR/R4",
    scopes=_patient_read_scopes(
        "patient/AllergyIntolerance.read",
        "patient/Condition.read",
        "patient/Immunization.read",
        "launch/patient",
        "offline_access",
        "openid",
        "profile",
    ),
    oauth=OAuthSettings(uses_pkce=True),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(filter_results_by_type=True, supports_pagination=True),
)

MEDITECH_TEMPLATE = ProviderDescriptor(
    id="meditech",
    name="Meditech",
    authorization_endpoint="https://fhir.meditech.com/oauth2/authorize",
    token_endpoint="https://fhir.meditech.com/oauth2/token",
    resource_base_url="https://fhir.meditech.com/fhir",
    scopes=_patient_read_scopes("launch/patient", "openid", "profile"),
    oauth=OAuthSettings(uses_pkce=True),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(filter_results_by_type=True, supports_pagination=True),
)

ECLINICALWORKS_TEMPLATE = ProviderDescriptor(
    id="eclinicalworks",
    name="eClinicalWorks",
    authorization_endpoint="https://fhir.eclinicalworks.com/oauth2/authorize",
    token_endpoint="https://fhir.eclinicalworks.com/oauth2/token",
    resource_base_url="https://fhir.eclinicalworks.com/fhir",
    scopes=_patient_read_scopes("launch/patient", "openid"),
    oauth=OAuthSettings(uses_pkce=True),
    capabilities=ProviderCapabilities(
        supported_resource_types=COMMON_RESOURCE_TYPES,
        supports_refresh=True,
    ),
    quirks=ProviderQuirks(filter_results_by_type=True, supports_pagination=True),
)


PROVIDER_TEMPLATES: Dict[str, ProviderDescriptor] = {
    template.id: template
    for template in (
        EPIC_TEMPLATE,
        CERNER_TEMPLATE,
        ALLSCRIPTS_TEMPLATE,
        ATHENA_TEMPLATE,
        NEXTGEN_TEMPLATE,
        MEDITECH_TEMPLATE,
        ECLINICALWORKS_TEMPLATE,
    )
}


@dataclass
class ProviderInitConfig:
    """Host-supplied values for one provider template"""

    provider_id: str
    client_id: str
    redirect_uri: str
    url_placeholders: Dict[str, str] = field(default_factory=dict)
    overrides: Dict[str, Any] = field(default_factory=dict)


def create_provider_config(
    template: ProviderDescriptor,
    client_id: str,
    redirect_uri: str,
    url_placeholders: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ProviderDescriptor:
    """
    Build a registrable descriptor from a template.

    URL placeholder values are merged over the template's own defaults.
    Remaining keyword arguments replace descriptor fields verbatim.
    """
    quirks = template.quirks
    if url_placeholders:
        merged = dict(quirks.url_placeholders)
        merged.update(url_placeholders)
        quirks = dataclasses.replace(quirks, url_placeholders=merged)

    descriptor = dataclasses.replace(
        template,
        client_id=client_id,
        redirect_uri=redirect_uri,
        quirks=quirks,
    )
    if overrides:
        descriptor = dataclasses.replace(descriptor, **overrides)
    return descriptor


def get_supported_providers() -> List[Dict[str, str]]:
    return [{"id": template.id, "name": template.name} for template in PROVIDER_TEMPLATES.values()]


def initialize_providers(
    configs: List[ProviderInitConfig],
    registry: Optional[ProviderRegistry] = None,
) -> ProviderRegistry:
    """
    Replace the registry contents with providers built from templates.

    Unknown template ids are skipped with a warning.
    """
    registry = registry if registry is not None else get_provider_registry()
    registry.clear()

    for config in configs:
        template = PROVIDER_TEMPLATES.get(config.provider_id)
        if template is None:
            logger.warning("unknown_provider_template", provider_id=config.provider_id)
            continue

        registry.register(
            create_provider_config(
                template,
                client_id=config.client_id,
                redirect_uri=config.redirect_uri,
                url_placeholders=config.url_placeholders,
                **config.overrides,
            )
        )

    logger.info("providers_initialized", provider_ids=registry.provider_ids())
    return registry


def initialize_providers_from_settings(
    settings: Settings,
    registry: Optional[ProviderRegistry] = None,
) -> ProviderRegistry:
    """Register every template whose client id is configured in settings"""
    client_ids = {
        "epic": settings.EPIC_CLIENT_ID,
        "cerner": settings.CERNER_CLIENT_ID,
        "allscripts": settings.ALLSCRIPTS_CLIENT_ID,
        "athena": settings.ATHENA_CLIENT_ID,
        "nextgen": settings.NEXTGEN_CLIENT_ID,
        "meditech": settings.MEDITECH_CLIENT_ID,
        "eclinicalworks": settings.ECLINICALWORKS_CLIENT_ID,
    }

    configs = []
    for provider_id, client_id in client_ids.items():
        if not client_id:
            continue
        url_placeholders = {}
        if provider_id == "cerner":
            url_placeholders["TENANT_ID"] = settings.CERNER_TENANT_ID
        configs.append(
            ProviderInitConfig(
                provider_id=provider_id,
                client_id=client_id,
                redirect_uri=settings.REDIRECT_URI,
                url_placeholders=url_placeholders,
            )
        )

    registry = registry if registry is not None else get_provider_registry()
    if not configs:
        logger.warning("no_providers_configured")
        return registry

    return initialize_providers(configs, registry)


__all__ = [
    "PROVIDER_TEMPLATES",
    "EPIC_TEMPLATE",
    "CERNER_TEMPLATE",
    "ALLSCRIPTS_TEMPLATE",
    "ATHENA_TEMPLATE",
    "NEXTGEN_TEMPLATE",
    "MEDITECH_TEMPLATE",
    "ECLINICALWORKS_TEMPLATE",
    "ProviderInitConfig",
    "create_provider_config",
    "get_supported_providers",
    "initialize_providers",
    "initialize_providers_from_settings",
]
