"""
Token and Authorization-State Storage

Two prefix-scoped stores on top of a pluggable key-value backend:
- TokenStore: durable access/refresh/id tokens, expiry and patient id
- AuthorizationAttemptStore: short-lived CSRF state, PKCE verifier and
  provider id for the login round-trip

Backends:
- MemoryStorageBackend: in-process dict (default)
- RedisStorageBackend: redis.asyncio, shared across workers
"""

import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from cryptography.fernet import Fernet, InvalidToken

from emr_connect.core.config import settings
from emr_connect.core.logging import get_logger

logger = get_logger(__name__)


def parse_expires_in(value: Any) -> Optional[float]:
    """Token lifetime in seconds, or None when the value is not a finite number"""
    if isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if math.isfinite(seconds) else None


# ==============================================================================
# Records
# ==============================================================================


@dataclass
class TokenRecord:
    """Tokens issued by a provider for one session"""

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # None means the provider declared no lifetime
    patient_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        issued_at: Optional[datetime] = None,
    ) -> "TokenRecord":
        issued_at = issued_at or datetime.now(timezone.utc)
        expires_in = parse_expires_in(data.get("expires_in"))
        expires_at = None
        if expires_in is not None:
            expires_at = issued_at + timedelta(seconds=expires_in)
        patient = data.get("patient")

        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_at=expires_at,
            patient_id=str(patient) if patient else None,
            scope=data.get("scope"),
            token_type=data.get("token_type", "Bearer"),
        )

    def is_expired(self, buffer_seconds: int = 0) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at - timedelta(seconds=buffer_seconds)

    @property
    def granted_scopes(self) -> List[str]:
        return self.scope.split() if self.scope else []

    def to_dict(self) -> Dict[str, Any]:
        """Serializable summary without credential values"""
        return {
            "token_type": self.token_type,
            "has_refresh_token": bool(self.refresh_token),
            "has_id_token": bool(self.id_token),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "patient_id": self.patient_id,
            "scopes": self.granted_scopes,
        }


@dataclass
class AuthorizationAttempt:
    """In-flight login round-trip"""

    csrf_state: str
    provider_id: str
    pkce_verifier: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ==============================================================================
# Backends
# ==============================================================================


class StorageBackend(ABC):
    """Async key-value primitive consumed by the stores"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        ...


class MemoryStorageBackend(StorageBackend):
    """In-process storage for tests and single-process hosts"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _expired(self, key: str) -> bool:
        _, expires_at = self._data[key]
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, key: str) -> Optional[str]:
        if key not in self._data:
            return None
        if self._expired(key):
            del self._data[key]
            return None
        return self._data[key][0]

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and not self._expired(key)]


class RedisStorageBackend(StorageBackend):
    """
    Redis-backed storage.

    Usage:
        backend = RedisStorageBackend.from_url("redis://localhost:6379/0")
        store = TokenStore(backend, prefix="emr_connect:tokens:epic:")
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStorageBackend":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.client.setex(name=key, time=timedelta(seconds=ttl_seconds), value=value)
        else:
            await self.client.set(key, value)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def keys(self, prefix: str) -> List[str]:
        pattern = re.sub(r"([*?\[\]\\])", r"\\\1", prefix) + "*"
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def close(self) -> None:
        await self.client.close()


def create_storage_backend(redis_url: Optional[str] = None) -> StorageBackend:
    """Redis when a URL is configured, memory otherwise"""
    redis_url = redis_url or settings.REDIS_URL
    if redis_url:
        return RedisStorageBackend.from_url(redis_url)
    return MemoryStorageBackend()


# ==============================================================================
# Stores
# ==============================================================================


class _PrefixedStore:
    def __init__(self, backend: Optional[StorageBackend], prefix: str):
        self.backend = backend if backend is not None else MemoryStorageBackend()
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def clear(self) -> None:
        """Remove only keys carrying this store's prefix"""
        for key in await self.backend.keys(self.prefix):
            await self.backend.delete(key)


class TokenStore(_PrefixedStore):
    """
    Durable token persistence scoped by prefix.

    Token values are Fernet-encrypted at rest when an encryption key is
    configured.
    """

    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    ID_TOKEN = "id_token"
    TOKEN_EXPIRY = "token_expiry"
    PATIENT_ID = "patient_id"
    SCOPE = "scope"

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        prefix: Optional[str] = None,
        encryption_key: Optional[str] = None,
    ):
        super().__init__(backend, prefix if prefix is not None else settings.TOKEN_STORE_PREFIX)

        encryption_key = encryption_key or settings.TOKEN_ENCRYPTION_KEY
        self._cipher = Fernet(encryption_key.encode()) if encryption_key else None

    def _encrypt(self, value: str) -> str:
        if not self._cipher:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None or not self._cipher:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("token_decrypt_failed", prefix=self.prefix)
            return None

    async def _get_secret(self, name: str) -> Optional[str]:
        return self._decrypt(await self.backend.get(self._key(name)))

    async def _set_secret(self, name: str, value: str) -> None:
        await self.backend.set(self._key(name), self._encrypt(value))

    async def get_access_token(self) -> Optional[str]:
        return await self._get_secret(self.ACCESS_TOKEN)

    async def set_access_token(self, token: str) -> None:
        await self._set_secret(self.ACCESS_TOKEN, token)

    async def get_refresh_token(self) -> Optional[str]:
        return await self._get_secret(self.REFRESH_TOKEN)

    async def set_refresh_token(self, token: str) -> None:
        await self._set_secret(self.REFRESH_TOKEN, token)

    async def get_id_token(self) -> Optional[str]:
        return await self._get_secret(self.ID_TOKEN)

    async def set_id_token(self, token: str) -> None:
        await self._set_secret(self.ID_TOKEN, token)

    async def get_token_expiry(self) -> Optional[datetime]:
        raw = await self.backend.get(self._key(self.TOKEN_EXPIRY))
        if not raw:
            return None
        try:
            return datetime.fromtimestamp(float(raw), tz=timezone.utc)
        except ValueError:
            logger.warning("token_expiry_unparseable", prefix=self.prefix)
            return None

    async def set_token_expiry(self, expires_at: Optional[datetime]) -> None:
        if expires_at is None:
            await self.backend.delete(self._key(self.TOKEN_EXPIRY))
            return
        await self.backend.set(self._key(self.TOKEN_EXPIRY), str(expires_at.timestamp()))

    async def get_patient_id(self) -> Optional[str]:
        return await self.backend.get(self._key(self.PATIENT_ID))

    async def set_patient_id(self, patient_id: str) -> None:
        await self.backend.set(self._key(self.PATIENT_ID), patient_id)

    async def save(self, record: TokenRecord, keep_refresh_token: bool = True) -> None:
        """
        Persist a token response.

        The expiry is always rewritten together with the access token so a
        stale expiry never outlives the token it belonged to.
        """
        await self.set_access_token(record.access_token)
        await self.set_token_expiry(record.expires_at)

        if record.refresh_token:
            await self.set_refresh_token(record.refresh_token)
        elif not keep_refresh_token:
            await self.backend.delete(self._key(self.REFRESH_TOKEN))

        if record.id_token:
            await self.set_id_token(record.id_token)
        if record.patient_id:
            await self.set_patient_id(record.patient_id)
        if record.scope:
            await self.backend.set(self._key(self.SCOPE), record.scope)

    async def load(self) -> Optional[TokenRecord]:
        access_token = await self.get_access_token()
        if not access_token:
            return None

        return TokenRecord(
            access_token=access_token,
            refresh_token=await self.get_refresh_token(),
            id_token=await self.get_id_token(),
            expires_at=await self.get_token_expiry(),
            patient_id=await self.get_patient_id(),
            scope=await self.backend.get(self._key(self.SCOPE)),
        )


class AuthorizationAttemptStore(_PrefixedStore):
    """Short-lived state for one authorization round-trip"""

    STATE = "state"
    CODE_VERIFIER = "code_verifier"
    PROVIDER_ID = "provider_id"
    CREATED_AT = "created_at"

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        prefix: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        super().__init__(backend, prefix if prefix is not None else settings.AUTH_STATE_PREFIX)
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.AUTH_STATE_TTL_SECONDS

    async def _set(self, name: str, value: str) -> None:
        await self.backend.set(self._key(name), value, ttl_seconds=self.ttl_seconds)

    async def get_state(self) -> Optional[str]:
        return await self.backend.get(self._key(self.STATE))

    async def set_state(self, state: str) -> None:
        await self._set(self.STATE, state)

    async def get_code_verifier(self) -> Optional[str]:
        return await self.backend.get(self._key(self.CODE_VERIFIER))

    async def set_code_verifier(self, verifier: str) -> None:
        await self._set(self.CODE_VERIFIER, verifier)

    async def get_provider_id(self) -> Optional[str]:
        return await self.backend.get(self._key(self.PROVIDER_ID))

    async def set_provider_id(self, provider_id: str) -> None:
        await self._set(self.PROVIDER_ID, provider_id)

    async def save(self, attempt: AuthorizationAttempt) -> None:
        """Replace any pending attempt"""
        await self.clear()
        await self.set_state(attempt.csrf_state)
        await self.set_provider_id(attempt.provider_id)
        await self._set(self.CREATED_AT, str(attempt.created_at.timestamp()))
        if attempt.pkce_verifier:
            await self.set_code_verifier(attempt.pkce_verifier)

    async def load(self) -> Optional[AuthorizationAttempt]:
        state = await self.get_state()
        if not state:
            return None

        created_raw = await self.backend.get(self._key(self.CREATED_AT))
        created_at = (
            datetime.fromtimestamp(float(created_raw), tz=timezone.utc) if created_raw else datetime.now(timezone.utc)
        )
        return AuthorizationAttempt(
            csrf_state=state,
            provider_id=await self.get_provider_id() or "",
            pkce_verifier=await self.get_code_verifier(),
            created_at=created_at,
        )


__all__ = [
    "TokenRecord",
    "AuthorizationAttempt",
    "StorageBackend",
    "MemoryStorageBackend",
    "RedisStorageBackend",
    "create_storage_backend",
    "TokenStore",
    "AuthorizationAttemptStore",
]
