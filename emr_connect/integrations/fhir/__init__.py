"""
FHIR Integration Package

SMART on FHIR authorization and FHIR R4 data access across EHR vendors.

Components:
- ProviderRegistry: Provider descriptors with URL placeholder resolution
- Provider templates: Presets for Epic, Cerner, Allscripts, Athena, NextGen,
  Meditech and eClinicalWorks
- SMARTAuthClient: Authorization code flow with PKCE, refresh and logout
- FHIRClient: Quirk-aware read/search with interceptors
- PatientService: Concurrent patient data aggregation

Usage:
    from emr_connect.integrations.fhir import (
        FHIRClient,
        PatientService,
        ProviderInitConfig,
        SMARTAuthClient,
        initialize_providers,
    )

    registry = initialize_providers(
        [ProviderInitConfig("epic", client_id="my-app", redirect_uri="https://app/callback")]
    )

    auth = SMARTAuthClient("epic", registry=registry)
    url = await auth.authorize()
    # Redirect the user to url; on return:
    await auth.handle_callback(callback_url)

    async with FHIRClient(auth) as client:
        result = await PatientService(client).get_all_patient_data(await auth.get_patient_id())
"""

# Errors
from .exceptions import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationError,
    CodeVerifierMissingError,
    ConfigurationError,
    EMRConnectError,
    FHIRAuthenticationError,
    FHIRError,
    FHIRNetworkError,
    FHIRParseError,
    FHIRRequestError,
    FHIRTimeoutError,
    MissingCodeError,
    MissingStateError,
    NoAccessTokenError,
    NoRefreshTokenError,
    ProviderNotFoundError,
    StateMismatchError,
    TokenError,
    TokenExchangeFailedError,
    TokenExpiredNoRefreshError,
    TokenRefreshFailedError,
    UnresolvedPlaceholderError,
)

# FHIR Client
from .fhir_client import FHIRClient, FHIRClientStats, FHIRRequest, build_query_string

# FHIR Models
from .fhir_models import FHIRBundle, FHIRResourceType, parse_operation_outcome

# Patient Service
from .patient_service import PatientDataResult, PatientDataStatus, PatientService

# PKCE
from .pkce import PKCEPair, decode_unverified_token, generate_pkce_pair, generate_state

# Providers
from .provider_models import OAuthSettings, ProviderCapabilities, ProviderDescriptor, ProviderQuirks
from .provider_registry import ProviderRegistry, get_provider_registry
from .provider_templates import (
    PROVIDER_TEMPLATES,
    ProviderInitConfig,
    create_provider_config,
    get_supported_providers,
    initialize_providers,
    initialize_providers_from_settings,
)

# SMART Auth
from .smart_auth_client import AuthState, SMARTAuthClient

# Storage
from .token_storage import (
    AuthorizationAttempt,
    AuthorizationAttemptStore,
    MemoryStorageBackend,
    RedisStorageBackend,
    StorageBackend,
    TokenRecord,
    TokenStore,
    create_storage_backend,
)

__all__ = [
    # Errors
    "EMRConnectError",
    "ConfigurationError",
    "ProviderNotFoundError",
    "UnresolvedPlaceholderError",
    "AuthorizationError",
    "AuthorizationDeniedError",
    "MissingCodeError",
    "MissingStateError",
    "StateMismatchError",
    "CodeVerifierMissingError",
    "AuthorizationCancelledError",
    "TokenExchangeFailedError",
    "TokenError",
    "NoAccessTokenError",
    "NoRefreshTokenError",
    "TokenExpiredNoRefreshError",
    "TokenRefreshFailedError",
    "FHIRError",
    "FHIRAuthenticationError",
    "FHIRNetworkError",
    "FHIRTimeoutError",
    "FHIRParseError",
    "FHIRRequestError",
    # FHIR Client
    "FHIRClient",
    "FHIRClientStats",
    "FHIRRequest",
    "build_query_string",
    # FHIR Models
    "FHIRBundle",
    "FHIRResourceType",
    "parse_operation_outcome",
    # Patient Service
    "PatientDataResult",
    "PatientDataStatus",
    "PatientService",
    # PKCE
    "PKCEPair",
    "decode_unverified_token",
    "generate_pkce_pair",
    "generate_state",
    # Providers
    "OAuthSettings",
    "ProviderCapabilities",
    "ProviderDescriptor",
    "ProviderQuirks",
    "ProviderRegistry",
    "get_provider_registry",
    "PROVIDER_TEMPLATES",
    "ProviderInitConfig",
    "create_provider_config",
    "get_supported_providers",
    "initialize_providers",
    "initialize_providers_from_settings",
    # SMART Auth
    "AuthState",
    "SMARTAuthClient",
    # Storage
    "AuthorizationAttempt",
    "AuthorizationAttemptStore",
    "MemoryStorageBackend",
    "RedisStorageBackend",
    "StorageBackend",
    "TokenRecord",
    "TokenStore",
    "create_storage_backend",
]
