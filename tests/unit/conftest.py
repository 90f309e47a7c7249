"""
Shared fixtures for the unit tests.

HTTP traffic goes through an in-memory stand-in for aiohttp.ClientSession
that answers from a route table and records every call.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jwt
import pytest

from emr_connect.integrations.fhir.provider_models import (
    OAuthSettings,
    ProviderCapabilities,
    ProviderDescriptor,
    ProviderQuirks,
)
from emr_connect.integrations.fhir.provider_registry import ProviderRegistry
from emr_connect.integrations.fhir.smart_auth_client import SMARTAuthClient
from emr_connect.integrations.fhir.token_storage import MemoryStorageBackend

AUTH_URL = "https://auth.test/authorize"
TOKEN_URL = "https://auth.test/token"
REVOKE_URL = "https://auth.test/revoke"
BASE_URL = "https://fhir.test/r4"
REDIRECT_URI = "https://app.test/callback"

JWT_TEST_KEY = "unit-test-signing-key-of-sufficient-length"


@dataclass
class RecordedCall:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None


class FakeResponse:
    def __init__(self, status: int = 200, body: str = "", headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.body = body
        self.headers = headers or {}

    async def text(self) -> str:
        return self.body

    async def json(self) -> Any:
        return json.loads(self.body)


class _RequestContext:
    def __init__(self, route: "FakeRoute"):
        self.route = route

    async def __aenter__(self) -> FakeResponse:
        if self.route.gate is not None:
            await self.route.gate.wait()
        if self.route.error is not None:
            raise self.route.error
        return self.route.next_response()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return False


@dataclass
class FakeRoute:
    method: str
    url: str
    responses: List[FakeResponse] = field(default_factory=list)
    error: Optional[BaseException] = None
    gate: Optional[asyncio.Event] = None

    def matches(self, method: str, url: str) -> bool:
        return method == self.method and (url == self.url or url.startswith(self.url + "?"))

    def next_response(self) -> FakeResponse:
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeClientSession:
    """Route-table stand-in for aiohttp.ClientSession"""

    def __init__(self):
        self.routes: List[FakeRoute] = []
        self.calls: List[RecordedCall] = []
        self.closed = False

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        json_body: Any = None,
        body: Optional[str] = None,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> FakeRoute:
        """Register a route; later registrations for the same URL take precedence"""
        if body is None:
            body = json.dumps(json_body) if json_body is not None else ""
        route = FakeRoute(
            method=method,
            url=url,
            responses=[FakeResponse(status, body)],
            error=error,
            gate=gate,
        )
        self.routes.insert(0, route)
        return route

    def add_sequence(self, method: str, url: str, responses: List[FakeResponse]) -> FakeRoute:
        route = FakeRoute(method=method, url=url, responses=list(responses))
        self.routes.insert(0, route)
        return route

    def calls_to(self, url: str) -> List[RecordedCall]:
        return [c for c in self.calls if c.url == url or c.url.startswith(url + "?")]

    def _dispatch(self, method: str, url: str, headers=None, data=None, **kwargs) -> _RequestContext:
        self.calls.append(RecordedCall(method=method, url=url, headers=dict(headers or {}), data=data))
        for route in self.routes:
            if route.matches(method, url):
                return _RequestContext(route)
        raise AssertionError(f"Unexpected request: {method} {url}")

    def request(self, method: str, url: str, **kwargs) -> _RequestContext:
        return self._dispatch(method, url, **kwargs)

    def get(self, url: str, **kwargs) -> _RequestContext:
        return self._dispatch("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> _RequestContext:
        return self._dispatch("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True


def build_provider(**overrides) -> ProviderDescriptor:
    """Test provider with PKCE and refresh support"""
    values = {
        "id": "test",
        "name": "Test EHR",
        "authorization_endpoint": AUTH_URL,
        "token_endpoint": TOKEN_URL,
        "resource_base_url": BASE_URL,
        "client_id": "test-client",
        "redirect_uri": REDIRECT_URI,
        "scopes": ("openid", "fhirUser", "patient/*.read"),
        "oauth": OAuthSettings(uses_pkce=True),
        "capabilities": ProviderCapabilities(supports_refresh=True),
        "quirks": ProviderQuirks(),
    }
    values.update(overrides)
    return ProviderDescriptor(**values)


def make_id_token(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, JWT_TEST_KEY, algorithm="HS256")


@pytest.fixture
def fake_session():
    return FakeClientSession()


@pytest.fixture
def provider_factory():
    return build_provider


@pytest.fixture
def id_token_factory():
    return make_id_token


@pytest.fixture
def registry():
    return ProviderRegistry([build_provider()])


@pytest.fixture
def backend():
    return MemoryStorageBackend()


@pytest.fixture
def auth_client(registry, backend, fake_session):
    return SMARTAuthClient("test", registry=registry, backend=backend, session=fake_session)
