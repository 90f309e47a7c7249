"""
FHIR R4 Resource Client

Authenticated read/search against one provider's FHIR endpoint with:
- Provider quirks applied to headers, query defaults and error handling
- Bundle unwrapping with optional result-type filtering and paging
- Ordered request/response interceptor chains
- Request statistics and an error callback

Tokens come from the provider's SMARTAuthClient, which refreshes them
ahead of expiry.
"""

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import quote, urlencode

import aiohttp

from emr_connect.core.config import settings
from emr_connect.core.logging import get_logger

from .exceptions import (
    FHIRAuthenticationError,
    FHIRError,
    FHIRNetworkError,
    FHIRParseError,
    FHIRRequestError,
    FHIRTimeoutError,
    TokenError,
)
from .fhir_models import FHIRBundle, ResourceTypeLike, parse_operation_outcome, resource_type_name
from .provider_models import ProviderDescriptor
from .provider_registry import ProviderRegistry
from .smart_auth_client import SMARTAuthClient

logger = get_logger(__name__)


# ==============================================================================
# Request / Response Models
# ==============================================================================


@dataclass
class FHIRRequest:
    """Outgoing request as seen by request interceptors"""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    resource_type: str = ""
    operation: str = ""


@dataclass
class FHIRClientStats:
    """Aggregate statistics for FHIR client"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    not_found_suppressed: int = 0
    avg_latency_ms: float = 0.0
    requests_by_resource: Dict[str, int] = field(default_factory=dict)
    errors_by_type: Dict[str, int] = field(default_factory=dict)


RequestInterceptor = Callable[[FHIRRequest], Union[Optional[FHIRRequest], Awaitable[Optional[FHIRRequest]]]]
ResponseInterceptor = Callable[[Any], Any]
ErrorCallback = Callable[[FHIRError], Any]

SearchParams = Mapping[str, Any]


def build_query_string(params: SearchParams) -> str:
    """
    Encode search parameters.

    None values are omitted and list values repeat the key.
    """
    pairs = []
    for key, value in params.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is None:
                continue
            if isinstance(item, bool):
                item = "true" if item else "false"
            pairs.append((key, str(item)))
    return urlencode(pairs)


def years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # Feb 29 into a non-leap year
        return today.replace(year=today.year - years, day=28)


def _is_under_base_url(url: str, base_url: str) -> bool:
    base = base_url.rstrip("/")
    return url == base or url.startswith((f"{base}/", f"{base}?"))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ==============================================================================
# FHIR Client
# ==============================================================================


class FHIRClient:
    """
    FHIR R4 client bound to one provider.

    Usage:
        auth = SMARTAuthClient("epic", registry=registry)
        async with FHIRClient(auth) as client:
            patient = await client.read("Patient", "123")
            labs = await client.search_by_patient("Observation", "123", {"category": "laboratory"})

    A status listed in the provider's not_found_status_codes yields None
    from read() and [] from search() instead of raising.
    """

    def __init__(
        self,
        auth_client: SMARTAuthClient,
        registry: Optional[ProviderRegistry] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: Optional[float] = None,
        on_error: Optional[ErrorCallback] = None,
        max_pages: Optional[int] = None,
        date_filter_years: Optional[int] = None,
    ):
        self.auth_client = auth_client
        self.provider_id = auth_client.provider_id
        self.registry = registry if registry is not None else auth_client.registry

        self.timeout_seconds = timeout_seconds or settings.HTTP_TIMEOUT_SECONDS
        self.on_error = on_error
        self.max_pages = max_pages or settings.MAX_SEARCH_PAGES
        self.date_filter_years = date_filter_years or settings.DEFAULT_DATE_FILTER_YEARS

        self._session = session
        self._owns_session = session is None

        self._request_interceptors: List[RequestInterceptor] = []
        self._response_interceptors: List[ResponseInterceptor] = []

        self._stats = FHIRClientStats()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session"""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "FHIRClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Configuration
    # =========================================================================

    def get_provider(self) -> ProviderDescriptor:
        return self.registry.resolve(self.provider_id)

    def is_resource_type_supported(self, resource_type: ResourceTypeLike) -> bool:
        supported = self.get_provider().capabilities.supported_resource_types
        if supported is None:
            return True
        return resource_type_name(resource_type) in supported

    def add_request_interceptor(self, interceptor: RequestInterceptor) -> None:
        """
        Register a request interceptor.

        Interceptors run in registration order; each receives the FHIRRequest
        produced by the previous one and may return a replacement (or None to
        keep the one it was given, mutated or not).
        """
        self._request_interceptors.append(interceptor)

    def add_response_interceptor(self, interceptor: ResponseInterceptor) -> None:
        """Register a transform applied to each decoded response body"""
        self._response_interceptors.append(interceptor)

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def read(
        self,
        resource_type: ResourceTypeLike,
        resource_id: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Read a single resource by ID.

        Returns:
            Resource dict, or None for a quirk-suppressed "not found" status
        """
        type_name = resource_type_name(resource_type)
        provider = self.get_provider()
        url = f"{provider.resource_base_url.rstrip('/')}/{type_name}/{quote(str(resource_id), safe='')}"

        return await self._request(provider, url, type_name, "read", headers)

    async def search(
        self,
        resource_type: ResourceTypeLike,
        params: Optional[SearchParams] = None,
        headers: Optional[Dict[str, str]] = None,
        follow_pages: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Search for resources.

        Provider defaults (search params, sort order, date window) are
        applied for keys the caller did not set; passing None for a key
        suppresses its default. With follow_pages, bundle "next" links are
        followed for providers that support paging, up to max_pages.
        """
        type_name = resource_type_name(resource_type)
        provider = self.get_provider()
        query = self._apply_search_defaults(provider, type_name, params or {})

        url = f"{provider.resource_base_url.rstrip('/')}/{type_name}"
        query_string = build_query_string(query)
        if query_string:
            url = f"{url}?{query_string}"

        results: List[Dict[str, Any]] = []
        pages = 0
        while url:
            data = await self._request(provider, url, type_name, "search", headers)
            pages += 1
            if data is None:
                break

            results.extend(self._unwrap(provider, type_name, data))

            if not (follow_pages and provider.quirks.supports_pagination):
                break
            url = FHIRBundle.from_dict(data).next_link if FHIRBundle.is_bundle(data) else None
            if url and not _is_under_base_url(url, provider.resource_base_url):
                # The bearer token is only ever sent to the provider's own endpoint
                logger.warning(
                    "search_next_link_rejected", provider_id=provider.id, resource_type=type_name, next_url=url
                )
                break
            if url and pages >= self.max_pages:
                logger.info("search_page_limit_reached", provider_id=provider.id, resource_type=type_name, pages=pages)
                break

        return results

    async def search_by_patient(
        self,
        resource_type: ResourceTypeLike,
        patient_id: str,
        extra_params: Optional[SearchParams] = None,
        follow_pages: bool = False,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"patient": patient_id}
        if extra_params:
            params.update(extra_params)
        return await self.search(resource_type, params, follow_pages=follow_pages)

    def _apply_search_defaults(
        self,
        provider: ProviderDescriptor,
        type_name: str,
        params: SearchParams,
    ) -> Dict[str, Any]:
        quirks = provider.quirks

        query: Dict[str, Any] = dict(quirks.default_search_params.get(type_name, {}))
        query.update(params)

        default_sort = quirks.default_sort.get(type_name)
        if default_sort and "_sort" not in query:
            query["_sort"] = default_sort

        if quirks.requires_date_filter.get(type_name) and "date" not in query:
            query["date"] = f"ge{years_before(date.today(), self.date_filter_years).isoformat()}"

        return query

    def _unwrap(self, provider: ProviderDescriptor, type_name: str, data: Any) -> List[Dict[str, Any]]:
        if FHIRBundle.is_bundle(data):
            filter_type = type_name if provider.quirks.filter_results_by_type else None
            return FHIRBundle.from_dict(data).resources(filter_type)

        # Some servers answer a search with the bare resource
        if isinstance(data, dict) and data.get("resourceType") == type_name:
            return [data]

        logger.warning("search_response_not_bundle", provider_id=provider.id, resource_type=type_name)
        return []

    # =========================================================================
    # Request Pipeline
    # =========================================================================

    async def _request(
        self,
        provider: ProviderDescriptor,
        url: str,
        resource_type: str,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Any]:
        try:
            access_token = await self.auth_client.get_access_token()
        except TokenError as e:
            raise await self._fail(
                FHIRAuthenticationError(
                    f"Authentication required: {e.message}",
                    resource_type=resource_type,
                    provider_id=provider.id,
                )
            ) from e

        request_headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": provider.quirks.accept_header,
        }
        request_headers.update(provider.quirks.custom_headers)
        if headers:
            request_headers.update(headers)

        request = FHIRRequest(
            method="GET",
            url=url,
            headers=request_headers,
            resource_type=resource_type,
            operation=operation,
        )
        for interceptor in self._request_interceptors:
            request = await _maybe_await(interceptor(request)) or request

        session = await self._get_session()
        start_time = time.monotonic()
        try:
            async with session.request(
                request.method,
                request.url,
                headers=request.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                status = response.status
                body = await response.text()
        except asyncio.TimeoutError as e:
            self._record_request(resource_type, start_time)
            raise await self._fail(
                FHIRTimeoutError(
                    f"Request timed out after {self.timeout_seconds}s",
                    resource_type=resource_type,
                    provider_id=provider.id,
                )
            ) from e
        except aiohttp.ClientError as e:
            self._record_request(resource_type, start_time)
            raise await self._fail(
                FHIRNetworkError(
                    f"Network error: {e}",
                    resource_type=resource_type,
                    provider_id=provider.id,
                )
            ) from e

        self._record_request(resource_type, start_time)

        if status in provider.quirks.not_found_status_codes:
            self._stats.not_found_suppressed += 1
            logger.debug(
                "fhir_not_found_suppressed",
                provider_id=provider.id,
                resource_type=resource_type,
                operation=operation,
                status=status,
            )
            return None

        if not 200 <= status < 300:
            outcome = self._decode(body)
            message = parse_operation_outcome(outcome) or f"HTTP {status}"
            raise await self._fail(
                FHIRRequestError(
                    f"FHIR {operation} {resource_type} failed ({status}): {message}",
                    status_code=status,
                    resource_type=resource_type,
                    operation_outcome=outcome if isinstance(outcome, dict) else None,
                    provider_id=provider.id,
                )
            )

        try:
            data = json.loads(body)
        except ValueError as e:
            raise await self._fail(
                FHIRParseError(
                    f"Invalid JSON in {resource_type} response",
                    status_code=status,
                    resource_type=resource_type,
                    provider_id=provider.id,
                )
            ) from e

        for interceptor in self._response_interceptors:
            data = await _maybe_await(interceptor(data))

        self._stats.successful_requests += 1
        return data

    @staticmethod
    def _decode(body: str) -> Any:
        try:
            return json.loads(body) if body else None
        except ValueError:
            return None

    async def _fail(self, error: FHIRError) -> FHIRError:
        """Count, log and report an error; returns it for raising"""
        self._stats.failed_requests += 1
        error_type = type(error).__name__
        self._stats.errors_by_type[error_type] = self._stats.errors_by_type.get(error_type, 0) + 1

        logger.warning(
            "fhir_request_failed",
            provider_id=error.provider_id,
            resource_type=error.resource_type,
            status=error.status_code,
            error_type=error_type,
        )

        if self.on_error is not None:
            try:
                await _maybe_await(self.on_error(error))
            except Exception as e:
                logger.warning("fhir_error_callback_failed", error=str(e))

        return error

    def _record_request(self, resource_type: str, start_time: float) -> None:
        latency_ms = (time.monotonic() - start_time) * 1000
        self._stats.total_requests += 1
        self._stats.requests_by_resource[resource_type] = self._stats.requests_by_resource.get(resource_type, 0) + 1

        n = self._stats.total_requests
        self._stats.avg_latency_ms = (self._stats.avg_latency_ms * (n - 1) + latency_ms) / n

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics"""
        return {
            "total_requests": self._stats.total_requests,
            "successful_requests": self._stats.successful_requests,
            "failed_requests": self._stats.failed_requests,
            "not_found_suppressed": self._stats.not_found_suppressed,
            "avg_latency_ms": self._stats.avg_latency_ms,
            "requests_by_resource": dict(self._stats.requests_by_resource),
            "errors_by_type": dict(self._stats.errors_by_type),
        }


__all__ = [
    "FHIRClient",
    "FHIRRequest",
    "FHIRClientStats",
    "build_query_string",
]
