"""
Error taxonomy for SMART authentication and FHIR access.

- Configuration errors: unknown provider, unresolved URL placeholder
- Protocol errors: the current login attempt failed and must be restarted
- Token errors: the caller should send the user back through login
- FHIR errors: per-request transport, data and HTTP failures
"""

from typing import Any, Dict, Optional


class EMRConnectError(Exception):
    """Base error carrying provider context"""

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "provider_id": self.provider_id,
        }


# ==============================================================================
# Configuration
# ==============================================================================


class ConfigurationError(EMRConnectError):
    """Provider configuration is unusable"""


class ProviderNotFoundError(ConfigurationError):
    """No provider registered under the requested id"""

    def __init__(self, provider_id: str):
        super().__init__(f'Provider with id "{provider_id}" not found', provider_id)


class UnresolvedPlaceholderError(ConfigurationError):
    """Endpoint URL still contains a {PLACEHOLDER}"""

    def __init__(self, provider_id: str, placeholders: list):
        self.placeholders = sorted(placeholders)
        super().__init__(
            f"Provider {provider_id} has unresolved URL placeholders: {', '.join(self.placeholders)}",
            provider_id,
        )


# ==============================================================================
# Authorization protocol
# ==============================================================================


class AuthorizationError(EMRConnectError):
    """Login attempt failed; restart with authorize()"""


class AuthorizationDeniedError(AuthorizationError):
    """Provider returned an error on the callback"""

    def __init__(self, error_code: str, description: Optional[str] = None, provider_id: Optional[str] = None):
        self.error_code = error_code
        self.description = description
        message = f"Authorization failed: {error_code}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message, provider_id)


class MissingCodeError(AuthorizationError):
    """Callback carries no authorization code"""

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("Authorization code not found in callback URL", provider_id)


class MissingStateError(AuthorizationError):
    """Callback carries no state parameter"""

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("State parameter not found in callback URL", provider_id)


class StateMismatchError(AuthorizationError):
    """Callback state differs from the stored CSRF state"""

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("State mismatch - possible CSRF attack", provider_id)


class CodeVerifierMissingError(AuthorizationError):
    """PKCE provider but no stored code verifier"""

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("PKCE code verifier not found for pending authorization", provider_id)


class AuthorizationCancelledError(AuthorizationError):
    """In-flight code exchange was aborted"""

    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("Authorization was cancelled before the code exchange completed", provider_id)


class TokenExchangeFailedError(AuthorizationError):
    """Token endpoint rejected the authorization code"""

    def __init__(self, status_code: Optional[int], body: str, provider_id: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token exchange failed ({status_code}): {body}", provider_id)


# ==============================================================================
# Token lifecycle
# ==============================================================================


class TokenError(EMRConnectError):
    """No usable token; the user must log in again"""


class NoAccessTokenError(TokenError):
    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("No access token available", provider_id)


class NoRefreshTokenError(TokenError):
    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("No refresh token available", provider_id)


class TokenExpiredNoRefreshError(TokenError):
    def __init__(self, provider_id: Optional[str] = None):
        super().__init__("Access token expired and refresh not supported", provider_id)


class TokenRefreshFailedError(TokenError):
    """Token endpoint rejected the refresh request"""

    def __init__(self, status_code: Optional[int], body: str, provider_id: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token refresh failed ({status_code}): {body}", provider_id)


# ==============================================================================
# FHIR requests
# ==============================================================================


class FHIRError(EMRConnectError):
    """Base FHIR request error"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        resource_type: Optional[str] = None,
        operation_outcome: Optional[Dict[str, Any]] = None,
        provider_id: Optional[str] = None,
    ):
        super().__init__(message, provider_id)
        self.status_code = status_code
        self.resource_type = resource_type
        self.operation_outcome = operation_outcome

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "status_code": self.status_code,
                "resource_type": self.resource_type,
            }
        )
        return data


class FHIRAuthenticationError(FHIRError):
    """No access token could be obtained for the request"""


class FHIRNetworkError(FHIRError):
    """Transport failure before a response arrived"""


class FHIRTimeoutError(FHIRNetworkError):
    """Request exceeded the configured timeout"""


class FHIRParseError(FHIRError):
    """Response body is not valid JSON"""


class FHIRRequestError(FHIRError):
    """Non-success HTTP status"""


__all__ = [
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
]
