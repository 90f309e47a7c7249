"""
SMART on FHIR Authorization Client

Per-provider OAuth 2.0 authorization code flow for patient-facing apps.

Features:
- Authorization URL generation with CSRF state and optional PKCE
- Callback validation and code exchange (cancellable)
- Token persistence with automatic refresh ahead of expiry
- Single-flight refresh shared by concurrent callers
- Patient id extraction from the token response or the id token
- Logout with optional token revocation

Standards:
- SMART App Launch Framework
- OAuth 2.0 (RFC 6749), PKCE (RFC 7636), Token Revocation (RFC 7009)
"""

import asyncio
import base64
import hmac
import inspect
import json
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from urllib.parse import parse_qs, urlencode, urlparse

import aiohttp

from emr_connect.core.config import settings
from emr_connect.core.logging import get_logger

from .exceptions import (
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    CodeVerifierMissingError,
    MissingCodeError,
    MissingStateError,
    NoAccessTokenError,
    NoRefreshTokenError,
    StateMismatchError,
    TokenExchangeFailedError,
    TokenExpiredNoRefreshError,
    TokenRefreshFailedError,
)
from .pkce import decode_unverified_token, generate_pkce_pair, generate_state
from .provider_models import ProviderDescriptor
from .provider_registry import ProviderRegistry, get_provider_registry
from .token_storage import (
    AuthorizationAttempt,
    AuthorizationAttemptStore,
    MemoryStorageBackend,
    StorageBackend,
    TokenRecord,
    TokenStore,
    parse_expires_in,
)

logger = get_logger(__name__)

PATIENT_REFERENCE_PATTERN = re.compile(r"Patient/([^/]+)")

TokenRefreshCallback = Callable[[str], Union[None, Awaitable[None]]]


class AuthState(str, Enum):
    """Authorization lifecycle of one client"""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION_PENDING = "authorization_pending"
    AUTHENTICATED = "authenticated"


def _first_param(query: Dict[str, list], name: str) -> Optional[str]:
    values = query.get(name)
    return values[0] if values else None


def _walk_claim_path(claims: Dict[str, Any], path: str) -> Any:
    node: Any = claims
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def patient_id_from_reference(value: Any) -> Optional[str]:
    """
    Reduce a claim value to a bare patient id.

    "Patient/123" and "https://host/fhir/Patient/123" yield "123". A bare
    id is returned as is; a reference to any other resource type yields None.
    """
    if not value or not isinstance(value, str):
        return None
    match = PATIENT_REFERENCE_PATTERN.search(value)
    if match:
        return match.group(1)
    if "/" in value:
        return None
    return value


class SMARTAuthClient:
    """
    SMART on FHIR authorization client bound to one provider.

    Usage:
        client = SMARTAuthClient("epic", registry=registry)

        url = await client.authorize()
        # Redirect the user to url, then on the redirect back:
        record = await client.handle_callback(callback_url)

        token = await client.get_access_token()  # refreshed when near expiry
    """

    def __init__(
        self,
        provider_id: str,
        registry: Optional[ProviderRegistry] = None,
        token_store: Optional[TokenStore] = None,
        attempt_store: Optional[AuthorizationAttemptStore] = None,
        backend: Optional[StorageBackend] = None,
        on_token_refresh: Optional[TokenRefreshCallback] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: Optional[float] = None,
        refresh_buffer_seconds: Optional[int] = None,
    ):
        self.provider_id = provider_id
        self.registry = registry if registry is not None else get_provider_registry()

        # Both stores share one backend, separated by provider-scoped prefixes
        backend = backend if backend is not None else MemoryStorageBackend()
        self.token_store = token_store or TokenStore(
            backend,
            prefix=f"{settings.TOKEN_STORE_PREFIX}{provider_id}:",
        )
        self.attempt_store = attempt_store or AuthorizationAttemptStore(
            backend,
            prefix=f"{settings.AUTH_STATE_PREFIX}{provider_id}:",
        )

        self.on_token_refresh = on_token_refresh
        self.timeout_seconds = timeout_seconds or settings.HTTP_TIMEOUT_SECONDS
        self.refresh_buffer_seconds = (
            refresh_buffer_seconds if refresh_buffer_seconds is not None else settings.TOKEN_REFRESH_BUFFER_SECONDS
        )

        self._session = session
        self._owns_session = session is None

        self._refresh_future: Optional[asyncio.Future] = None
        # Bumped whenever the stored session is replaced or dropped
        self._session_generation = 0
        self._exchange_task: Optional[asyncio.Task] = None
        self._exchange_cancelled = False

    # =========================================================================
    # HTTP Session
    # =========================================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Cancel in-flight work and close the session if we created it"""
        self._cancel_exchange()
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "SMARTAuthClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _post_form(
        self,
        provider: ProviderDescriptor,
        url: str,
        data: Dict[str, str],
    ) -> Tuple[int, str]:
        session = await self._get_session()

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }

        # Confidential clients authenticate with HTTP Basic
        if provider.client_secret:
            credentials = base64.b64encode(f"{provider.client_id}:{provider.client_secret}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"

        async with session.post(
            url,
            data=data,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
        ) as response:
            return response.status, await response.text()

    # =========================================================================
    # Provider / State
    # =========================================================================

    def get_provider(self) -> ProviderDescriptor:
        """Resolved descriptor for this client's provider"""
        return self.registry.resolve(self.provider_id)

    async def get_auth_state(self) -> AuthState:
        if await self.is_authenticated():
            return AuthState.AUTHENTICATED
        if await self.attempt_store.get_state():
            return AuthState.AUTHORIZATION_PENDING
        return AuthState.UNAUTHENTICATED

    async def is_authenticated(self) -> bool:
        """True while a stored access token is outside the refresh buffer of its expiry"""
        record = await self.token_store.load()
        return record is not None and not record.is_expired(self.refresh_buffer_seconds)

    async def get_patient_id(self) -> Optional[str]:
        return await self.token_store.get_patient_id()

    async def get_token_record(self) -> Optional[TokenRecord]:
        return await self.token_store.load()

    # =========================================================================
    # Authorization Flow
    # =========================================================================

    async def authorize(self) -> str:
        """
        Start a login attempt and return the provider authorization URL.

        Replaces any pending attempt and cancels an in-flight code exchange.
        """
        provider = self.get_provider()
        self._cancel_exchange()

        state = generate_state()
        pkce = generate_pkce_pair() if provider.oauth.uses_pkce else None

        await self.attempt_store.save(
            AuthorizationAttempt(
                csrf_state=state,
                provider_id=provider.id,
                pkce_verifier=pkce.verifier if pkce else None,
            )
        )

        params = {
            "response_type": provider.oauth.response_type,
            "client_id": provider.client_id,
            "redirect_uri": provider.redirect_uri,
            "scope": provider.scope_string,
            "state": state,
            "aud": provider.resource_base_url,
        }
        if pkce:
            params["code_challenge"] = pkce.challenge
            params["code_challenge_method"] = pkce.method

        separator = "&" if "?" in provider.authorization_endpoint else "?"
        auth_url = f"{provider.authorization_endpoint}{separator}{urlencode(params)}"

        logger.info("authorization_started", provider_id=provider.id, pkce=pkce is not None)
        return auth_url

    async def handle_callback(self, callback_url: str) -> TokenRecord:
        """
        Complete the login attempt from the provider redirect.

        Raises:
            AuthorizationDeniedError: provider returned an error
            MissingCodeError / MissingStateError: malformed callback
            StateMismatchError: state differs from the pending attempt
            CodeVerifierMissingError: PKCE verifier lost
            TokenExchangeFailedError: token endpoint rejected the code
            AuthorizationCancelledError: exchange aborted by the host
        """
        provider = self.get_provider()
        query = parse_qs(urlparse(callback_url).query)

        error = _first_param(query, "error")
        if error:
            logger.warning("authorization_denied", provider_id=provider.id, error=error)
            raise AuthorizationDeniedError(error, _first_param(query, "error_description"), provider.id)

        code = _first_param(query, "code")
        if not code:
            raise MissingCodeError(provider.id)

        state = _first_param(query, "state")
        if not state:
            raise MissingStateError(provider.id)

        stored_state = await self.attempt_store.get_state()
        if not stored_state or not hmac.compare_digest(stored_state.encode(), state.encode()):
            logger.warning("authorization_state_mismatch", provider_id=provider.id)
            raise StateMismatchError(provider.id)

        code_verifier = None
        if provider.oauth.uses_pkce:
            code_verifier = await self.attempt_store.get_code_verifier()
            if not code_verifier:
                raise CodeVerifierMissingError(provider.id)

        self._exchange_cancelled = False
        task = asyncio.ensure_future(self._exchange_code(provider, code, code_verifier))
        self._exchange_task = task
        try:
            token_data = await task
        except asyncio.CancelledError:
            if self._exchange_cancelled and task.cancelled():
                logger.info("authorization_cancelled", provider_id=provider.id)
                raise AuthorizationCancelledError(provider.id) from None
            raise
        finally:
            if self._exchange_task is task:
                self._exchange_task = None

        record = TokenRecord.from_token_response(token_data)
        record.patient_id = self._extract_patient_id(provider, token_data)

        # A fresh login replaces everything from the previous session
        self._session_generation += 1
        await self.token_store.clear()
        await self.token_store.save(record)
        await self.attempt_store.clear()

        logger.info(
            "authorization_completed",
            provider_id=provider.id,
            patient_id=record.patient_id,
            scopes=record.granted_scopes,
            has_refresh_token=bool(record.refresh_token),
        )
        return record

    async def cancel_authorization(self) -> None:
        """Abort any in-flight code exchange and drop the pending attempt"""
        self._cancel_exchange()
        await self.attempt_store.clear()

    def _cancel_exchange(self) -> None:
        if self._exchange_task is not None and not self._exchange_task.done():
            self._exchange_cancelled = True
            self._exchange_task.cancel()

    async def _exchange_code(
        self,
        provider: ProviderDescriptor,
        code: str,
        code_verifier: Optional[str],
    ) -> Dict[str, Any]:
        """Exchange authorization code for tokens"""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": provider.client_id,
            "redirect_uri": provider.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            status, body = await self._post_form(provider, provider.token_endpoint, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("token_exchange_network_error", provider_id=provider.id, error=str(e))
            raise TokenExchangeFailedError(None, str(e) or type(e).__name__, provider.id) from e

        if not 200 <= status < 300:
            logger.error("token_exchange_failed", provider_id=provider.id, status=status)
            raise TokenExchangeFailedError(status, body, provider.id)

        token_data = self._parse_token_body(body)
        if token_data is None:
            logger.error("token_exchange_invalid_response", provider_id=provider.id, status=status)
            raise TokenExchangeFailedError(status, "Token response is not a JSON object with an access_token", provider.id)
        return token_data

    @staticmethod
    def _parse_token_body(body: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(body)
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        if data.get("expires_in") is not None and parse_expires_in(data["expires_in"]) is None:
            return None
        return data

    def _extract_patient_id(self, provider: ProviderDescriptor, token_data: Dict[str, Any]) -> Optional[str]:
        quirks = provider.quirks

        if not quirks.patient_id_from_id_token:
            patient = token_data.get("patient")
            return str(patient) if patient else None

        claims = decode_unverified_token(token_data.get("id_token"))
        if not claims:
            logger.warning("id_token_missing_or_malformed", provider_id=provider.id)
            return None

        claim_path = quirks.id_token_claim_path
        value = _walk_claim_path(claims, claim_path)
        if value is None and claim_path == "fhirUser":
            value = claims.get("fhir_user")

        patient_id = patient_id_from_reference(value)
        if patient_id is None:
            logger.warning("patient_id_not_in_id_token", provider_id=provider.id, claim_path=claim_path)
        return patient_id

    # =========================================================================
    # Token Management
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Current access token, refreshed first when it is within the
        refresh buffer of its expiry.
        """
        record = await self.token_store.load()
        if record is None:
            raise NoAccessTokenError(self.provider_id)

        if record.is_expired(self.refresh_buffer_seconds):
            provider = self.get_provider()
            if not provider.capabilities.supports_refresh:
                raise TokenExpiredNoRefreshError(provider.id)
            record = await self.refresh_access_token()

        return record.access_token

    async def refresh_access_token(self) -> TokenRecord:
        """Refresh the access token; concurrent callers share one request"""
        if self._refresh_future is None:
            future = asyncio.ensure_future(self._refresh())
            future.add_done_callback(self._refresh_done)
            self._refresh_future = future
        return await asyncio.shield(self._refresh_future)

    def _refresh_done(self, future: asyncio.Future) -> None:
        if self._refresh_future is future:
            self._refresh_future = None
        # Mark the outcome as retrieved when every waiter has gone away
        if not future.cancelled():
            future.exception()

    async def _refresh(self) -> TokenRecord:
        provider = self.get_provider()
        generation = self._session_generation

        refresh_token = await self.token_store.get_refresh_token()
        if not refresh_token:
            raise NoRefreshTokenError(provider.id)

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": provider.client_id,
        }

        try:
            status, body = await self._post_form(provider, provider.token_endpoint, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("token_refresh_network_error", provider_id=provider.id, error=str(e))
            raise TokenRefreshFailedError(None, str(e) or type(e).__name__, provider.id) from e

        if generation != self._session_generation:
            # Logout or a new login happened while the request was in flight
            logger.info("token_refresh_discarded", provider_id=provider.id)
            raise NoAccessTokenError(provider.id)

        token_data = self._parse_token_body(body) if 200 <= status < 300 else None
        if token_data is None:
            # Rejected refresh: the session is unrecoverable
            await self.token_store.clear()
            logger.error("token_refresh_failed", provider_id=provider.id, status=status)
            raise TokenRefreshFailedError(status, body, provider.id)

        await self.token_store.save(TokenRecord.from_token_response(token_data))
        if generation != self._session_generation:
            await self.token_store.clear()
            logger.info("token_refresh_discarded", provider_id=provider.id)
            raise NoAccessTokenError(provider.id)
        record = await self.token_store.load()

        logger.info("token_refreshed", provider_id=provider.id, expires_at=record.expires_at)

        if self.on_token_refresh is not None:
            try:
                result = self.on_token_refresh(record.access_token)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("token_refresh_callback_failed", provider_id=provider.id, error=str(e))

        return record

    # =========================================================================
    # Logout
    # =========================================================================

    async def logout(self, revoke: bool = False) -> None:
        """
        Clear all tokens and any pending attempt.

        With revoke=True and a declared revocation endpoint, tokens are
        revoked first on a best-effort basis.
        """
        self._cancel_exchange()
        self._session_generation += 1
        try:
            if revoke:
                await self._revoke_tokens()
        finally:
            await self.token_store.clear()
            await self.attempt_store.clear()
            logger.info("logged_out", provider_id=self.provider_id)

    async def _revoke_tokens(self) -> None:
        provider = self.get_provider()
        if not provider.revocation_endpoint:
            return

        tokens = (
            ("refresh_token", await self.token_store.get_refresh_token()),
            ("access_token", await self.token_store.get_access_token()),
        )
        for hint, token in tokens:
            if not token:
                continue
            data = {"token": token, "token_type_hint": hint, "client_id": provider.client_id}
            try:
                status, _ = await self._post_form(provider, provider.revocation_endpoint, data)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("token_revocation_error", provider_id=provider.id, hint=hint, error=str(e))
                continue
            if 200 <= status < 300:
                logger.info("token_revoked", provider_id=provider.id, hint=hint)
            else:
                logger.warning("token_revocation_failed", provider_id=provider.id, hint=hint, status=status)


__all__ = [
    "AuthState",
    "SMARTAuthClient",
    "patient_id_from_reference",
]
