"""
Unit tests for token and authorization-state storage

Tests the memory backend, the Redis backend against a mocked client,
prefix isolation and encryption at rest.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet

from emr_connect.integrations.fhir.token_storage import (
    AuthorizationAttempt,
    AuthorizationAttemptStore,
    MemoryStorageBackend,
    RedisStorageBackend,
    TokenRecord,
    TokenStore,
    parse_expires_in,
)


class TestTokenRecord:
    """Tests for token response parsing."""

    def test_from_token_response(self):
        issued = datetime(2024, 1, 1, tzinfo=timezone.utc)

        record = TokenRecord.from_token_response(
            {
                "access_token": "at",
                "refresh_token": "rt",
                "expires_in": 3600,
                "patient": "p1",
                "scope": "openid patient/*.read",
            },
            issued_at=issued,
        )

        assert record.access_token == "at"
        assert record.refresh_token == "rt"
        assert record.expires_at == issued + timedelta(seconds=3600)
        assert record.patient_id == "p1"
        assert record.granted_scopes == ["openid", "patient/*.read"]

    def test_no_expires_in_means_no_expiry(self):
        record = TokenRecord.from_token_response({"access_token": "at"})

        assert record.expires_at is None
        assert record.is_expired(buffer_seconds=60) is False

    def test_string_and_float_expires_in(self):
        issued = datetime(2024, 1, 1, tzinfo=timezone.utc)

        for value in ("3600", "3600.0", 3600.0):
            record = TokenRecord.from_token_response({"access_token": "at", "expires_in": value}, issued_at=issued)
            assert record.expires_at == issued + timedelta(seconds=3600)

    def test_numeric_patient_id_is_stored_as_string(self):
        record = TokenRecord.from_token_response({"access_token": "at", "patient": 12345})

        assert record.patient_id == "12345"

    def test_parse_expires_in(self):
        assert parse_expires_in("90") == 90.0
        assert parse_expires_in("soon") is None
        assert parse_expires_in(None) is None
        assert parse_expires_in(True) is None
        assert parse_expires_in("nan") is None

    def test_expiry_buffer(self):
        record = TokenRecord(access_token="at", expires_at=datetime.now(timezone.utc) + timedelta(seconds=30))

        assert record.is_expired() is False
        assert record.is_expired(buffer_seconds=60) is True

    def test_to_dict_excludes_credentials(self):
        record = TokenRecord(access_token="secret-at", refresh_token="secret-rt")

        data = record.to_dict()

        assert "secret-at" not in str(data)
        assert data["has_refresh_token"] is True


class TestMemoryStorageBackend:
    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        backend = MemoryStorageBackend()

        await backend.set("k", "v")
        assert await backend.get("k") == "v"

        await backend.delete("k")
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_keys_by_prefix(self):
        backend = MemoryStorageBackend()
        await backend.set("a:1", "x")
        await backend.set("a:2", "y")
        await backend.set("b:1", "z")

        assert sorted(await backend.keys("a:")) == ["a:1", "a:2"]

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        now = [1000.0]
        backend = MemoryStorageBackend(clock=lambda: now[0])

        await backend.set("k", "v", ttl_seconds=10)
        assert await backend.get("k") == "v"

        now[0] = 1011.0
        assert await backend.get("k") is None
        assert await backend.keys("") == []


class TestRedisStorageBackend:
    """Tests for the Redis backend with a mocked client."""

    def setup_method(self):
        self.client = MagicMock()
        self.client.get = AsyncMock(return_value="v")
        self.client.set = AsyncMock()
        self.client.setex = AsyncMock()
        self.client.delete = AsyncMock()
        self.backend = RedisStorageBackend(self.client)

    @pytest.mark.asyncio
    async def test_get(self):
        assert await self.backend.get("k") == "v"
        self.client.get.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_set_without_ttl(self):
        await self.backend.set("k", "v")

        self.client.set.assert_awaited_once_with("k", "v")
        self.client.setex.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_with_ttl(self):
        await self.backend.set("k", "v", ttl_seconds=600)

        self.client.setex.assert_awaited_once_with(name="k", time=timedelta(seconds=600), value="v")

    @pytest.mark.asyncio
    async def test_keys_scans_prefix(self):
        async def scan_iter(match):
            assert match == "emr_connect:tokens:epic:*"
            for key in ("emr_connect:tokens:epic:access_token", "emr_connect:tokens:epic:patient_id"):
                yield key

        self.client.scan_iter = scan_iter

        keys = await self.backend.keys("emr_connect:tokens:epic:")

        assert keys == ["emr_connect:tokens:epic:access_token", "emr_connect:tokens:epic:patient_id"]


class TestTokenStore:
    """Tests for token persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        store = TokenStore(MemoryStorageBackend(), prefix="t:")
        expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)

        await store.save(TokenRecord(access_token="at", refresh_token="rt", expires_at=expires_at, patient_id="p1"))
        record = await store.load()

        assert record.access_token == "at"
        assert record.refresh_token == "rt"
        assert record.expires_at == expires_at
        assert record.patient_id == "p1"

    @pytest.mark.asyncio
    async def test_load_without_access_token(self):
        assert await TokenStore(MemoryStorageBackend(), prefix="t:").load() is None

    @pytest.mark.asyncio
    async def test_save_keeps_refresh_token_when_absent(self):
        store = TokenStore(MemoryStorageBackend(), prefix="t:")
        await store.save(TokenRecord(access_token="at1", refresh_token="rt1"))

        await store.save(TokenRecord(access_token="at2"))

        assert await store.get_access_token() == "at2"
        assert await store.get_refresh_token() == "rt1"

    @pytest.mark.asyncio
    async def test_save_drops_stale_expiry(self):
        store = TokenStore(MemoryStorageBackend(), prefix="t:")
        await store.save(TokenRecord(access_token="at1", expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc)))

        await store.save(TokenRecord(access_token="at2"))

        assert await store.get_token_expiry() is None

    @pytest.mark.asyncio
    async def test_clear_only_removes_own_prefix(self):
        backend = MemoryStorageBackend()
        await backend.set("other:access_token", "keep")
        store = TokenStore(backend, prefix="t:")
        await store.save(TokenRecord(access_token="at", refresh_token="rt"))

        await store.clear()

        assert await store.load() is None
        assert await backend.get("other:access_token") == "keep"

    @pytest.mark.asyncio
    async def test_encryption_at_rest(self):
        backend = MemoryStorageBackend()
        store = TokenStore(backend, prefix="t:", encryption_key=Fernet.generate_key().decode())

        await store.set_access_token("plain-token")

        assert await backend.get("t:access_token") != "plain-token"
        assert await store.get_access_token() == "plain-token"

    @pytest.mark.asyncio
    async def test_wrong_key_reads_as_missing(self):
        backend = MemoryStorageBackend()
        await TokenStore(backend, prefix="t:", encryption_key=Fernet.generate_key().decode()).set_access_token("x")

        other = TokenStore(backend, prefix="t:", encryption_key=Fernet.generate_key().decode())

        assert await other.get_access_token() is None


class TestAuthorizationAttemptStore:
    """Tests for pending-login state."""

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        store = AuthorizationAttemptStore(MemoryStorageBackend(), prefix="a:")

        await store.save(AuthorizationAttempt(csrf_state="s1", provider_id="epic", pkce_verifier="v1"))
        attempt = await store.load()

        assert attempt.csrf_state == "s1"
        assert attempt.provider_id == "epic"
        assert attempt.pkce_verifier == "v1"

    @pytest.mark.asyncio
    async def test_save_replaces_previous_attempt(self):
        store = AuthorizationAttemptStore(MemoryStorageBackend(), prefix="a:")
        await store.save(AuthorizationAttempt(csrf_state="s1", provider_id="epic", pkce_verifier="v1"))

        await store.save(AuthorizationAttempt(csrf_state="s2", provider_id="cerner"))

        assert await store.get_state() == "s2"
        assert await store.get_code_verifier() is None

    @pytest.mark.asyncio
    async def test_state_uses_ttl(self):
        backend = MagicMock()
        backend.set = AsyncMock()
        store = AuthorizationAttemptStore(backend, prefix="a:", ttl_seconds=120)

        await store.set_state("s1")

        backend.set.assert_awaited_once_with("a:state", "s1", ttl_seconds=120)

    @pytest.mark.asyncio
    async def test_clear(self):
        store = AuthorizationAttemptStore(MemoryStorageBackend(), prefix="a:")
        await store.save(AuthorizationAttempt(csrf_state="s1", provider_id="epic"))

        await store.clear()

        assert await store.load() is None
