"""Credential resolution for tools that act on a user's mail account.

Two sources exist and a deployment uses exactly one of them:

* ``header``: tokens travel with each inbound request as ``x-gmail-*``
  headers. Nothing is cached or persisted.
* ``session``: tokens live in a local encrypted store (falling back to a
  plain credentials file) and are cached for a few minutes.

:func:`create_credential_resolver` picks the variant from settings once, so
the dispatcher never branches on the source.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Union, runtime_checkable

from ..ai.tools.errors import ExpiredCredentialError, MissingCredentialError
from .settings import SecretVault, Settings, redact_secret

__all__ = [
    "CredentialRecord",
    "CredentialResolver",
    "HeaderCredentialResolver",
    "SessionCredentialResolver",
    "SecureCredentialStore",
    "AnyCredentialResolver",
    "create_credential_resolver",
    "HEADER_ACCESS_TOKEN",
    "HEADER_REFRESH_TOKEN",
    "HEADER_TOKEN_EXPIRY",
    "HEADER_TOKEN_TYPE",
]

LOGGER = logging.getLogger(__name__)

HEADER_ACCESS_TOKEN = "x-gmail-access-token"
HEADER_REFRESH_TOKEN = "x-gmail-refresh-token"
HEADER_TOKEN_EXPIRY = "x-gmail-token-expiry"
HEADER_TOKEN_TYPE = "x-gmail-token-type"

DEFAULT_CACHE_TTL = 5 * 60.0
_DEFAULT_DIR = Path.home() / ".vibeagent"
_STORE_KEY = "gmail"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class CredentialRecord:
    """OAuth token set for a mail account. ``expiry_date`` is epoch milliseconds."""

    access_token: str
    refresh_token: str
    expiry_date: int
    token_type: str
    scope: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CredentialRecord | None:
        """Build a record from stored JSON, or None when the shape is wrong."""
        if not isinstance(data, Mapping):
            return None
        access = data.get("access_token")
        refresh = data.get("refresh_token")
        expiry = data.get("expiry_date")
        token_type = data.get("token_type")
        if not (isinstance(access, str) and isinstance(refresh, str) and isinstance(token_type, str)):
            return None
        if isinstance(expiry, bool) or not isinstance(expiry, int):
            return None
        scope = data.get("scope")
        return cls(
            access_token=access,
            refresh_token=refresh,
            expiry_date=expiry,
            token_type=token_type,
            scope=scope if isinstance(scope, str) else None,
        )

    def merged(self, partial: Mapping[str, Any]) -> CredentialRecord:
        allowed = {f.name for f in fields(self)}
        changes = {key: value for key, value in partial.items() if key in allowed and value not in (None, "")}
        return replace(self, **changes)

    def is_expired(self, *, now_ms: int | None = None, skew_ms: int = 0) -> bool:
        """True when the token expires within ``skew_ms`` of ``now_ms``."""
        return self.expiry_date <= (now_ms if now_ms is not None else _now_ms()) + skew_ms

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("scope") is None:
            data.pop("scope")
        return data

    def to_headers(self) -> dict[str, str]:
        """Header form understood by remote mail tool servers."""
        return {
            HEADER_ACCESS_TOKEN: self.access_token,
            HEADER_REFRESH_TOKEN: self.refresh_token,
            HEADER_TOKEN_EXPIRY: str(self.expiry_date),
            HEADER_TOKEN_TYPE: self.token_type,
        }

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(access_token={redact_secret(self.access_token)!r}, "
            f"refresh_token={redact_secret(self.refresh_token)!r}, expiry_date={self.expiry_date}, "
            f"token_type={self.token_type!r})"
        )


@runtime_checkable
class CredentialResolver(Protocol):
    """Uniform contract shared by both credential sources."""

    source: str

    async def get_tokens(self, request_context: Mapping[str, str] | None = None) -> CredentialRecord:
        ...

    async def update_tokens(self, partial: Mapping[str, Any]) -> None:
        ...

    def clear_cache(self) -> None:
        ...


class HeaderCredentialResolver:
    """Reads tokens from the headers attached to the current request."""

    source = "header"

    def __init__(
        self,
        *,
        allow_expired: bool = True,
        expiry_skew_ms: int = 0,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._allow_expired = allow_expired
        self._expiry_skew_ms = max(0, int(expiry_skew_ms))
        self._now_ms = now_ms

    async def get_tokens(self, request_context: Mapping[str, str] | None = None) -> CredentialRecord:
        if request_context is None:
            raise MissingCredentialError(message="No request context available for header credentials")
        headers = {str(key).lower(): value for key, value in request_context.items()}
        access = self._require(headers, HEADER_ACCESS_TOKEN, "Missing or invalid Gmail access token")
        refresh = self._require(headers, HEADER_REFRESH_TOKEN, "Missing or invalid Gmail refresh token")
        expiry_raw = self._require(headers, HEADER_TOKEN_EXPIRY, "Missing or invalid token expiry date")
        token_type = self._require(headers, HEADER_TOKEN_TYPE, "Missing or invalid token type")
        try:
            expiry = int(expiry_raw, 10)
        except ValueError as exc:
            raise MissingCredentialError(
                message="Invalid token expiry date format",
                field_name=HEADER_TOKEN_EXPIRY,
            ) from exc

        record = CredentialRecord(
            access_token=access,
            refresh_token=refresh,
            expiry_date=expiry,
            token_type=token_type,
        )
        _check_expiry(
            record,
            allow_expired=self._allow_expired,
            now_ms=self._now_ms(),
            skew_ms=self._expiry_skew_ms,
        )
        return record

    async def update_tokens(self, partial: Mapping[str, Any]) -> None:
        # The caller owns persistence for header-sourced tokens.
        LOGGER.debug("Header credential update requested for %s; nothing to persist", sorted(partial))

    def clear_cache(self) -> None:
        return None

    @staticmethod
    def _require(headers: Mapping[str, Any], name: str, message: str) -> str:
        value = headers.get(name)
        if not isinstance(value, str) or not value.strip():
            raise MissingCredentialError(message=message, field_name=name)
        return value.strip()


class SecureCredentialStore:
    """Fernet-encrypted JSON file holding token records by account kind."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_DEFAULT_DIR / "credentials.enc.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    def read(self, key: str = _STORE_KEY) -> CredentialRecord | None:
        if not self._path.exists():
            return None
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Credential store %s is unreadable: %s", self._path, exc)
            return None
        token = payload.get(key) if isinstance(payload, dict) else None
        if not token or not isinstance(token, str):
            return None
        try:
            plaintext = self._vault.decrypt(token)
            data = json.loads(plaintext)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unable to decrypt %s credentials: %s", key, exc)
            return None
        return CredentialRecord.from_mapping(data)

    def write(self, record: CredentialRecord, key: str = _STORE_KEY) -> Path:
        payload: dict[str, Any] = {}
        if self._path.exists():
            try:
                existing = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(existing, dict):
                    payload = existing
            except json.JSONDecodeError:
                LOGGER.warning("Replacing unreadable credential store %s", self._path)
        payload[key] = self._vault.encrypt(json.dumps(record.to_dict()))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
        return self._path


class SessionCredentialResolver:
    """Reads tokens from the local secure store, then a credentials file."""

    source = "session"

    def __init__(
        self,
        store: SecureCredentialStore,
        *,
        credentials_path: Path | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        allow_expired: bool = True,
        expiry_skew_ms: int = 0,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._credentials_path = credentials_path or (_DEFAULT_DIR / "gmail-credentials.json")
        self._cache_ttl = max(0.0, float(cache_ttl))
        self._allow_expired = allow_expired
        self._expiry_skew_ms = max(0, int(expiry_skew_ms))
        self._clock = clock
        self._now_ms = now_ms
        self._cache: CredentialRecord | None = None
        self._cache_expiry = 0.0
        self._lock = asyncio.Lock()

    async def get_tokens(self, request_context: Mapping[str, str] | None = None) -> CredentialRecord:
        del request_context
        record = await self._load()
        _check_expiry(
            record,
            allow_expired=self._allow_expired,
            now_ms=self._now_ms(),
            skew_ms=self._expiry_skew_ms,
        )
        return record

    async def update_tokens(self, partial: Mapping[str, Any]) -> None:
        async with self._lock:
            current = self._cached() or await asyncio.to_thread(self._read_sources)
            if current is None:
                current = CredentialRecord.from_mapping(partial)
                if current is None:
                    raise MissingCredentialError(message="Cannot update tokens: no stored credentials to merge into")
            updated = current.merged(partial)
            self._remember(updated)
        await asyncio.to_thread(self._store.write, updated)
        LOGGER.info("Stored refreshed mail credentials (expires %s)", updated.expiry_date)

    def clear_cache(self) -> None:
        self._cache = None
        self._cache_expiry = 0.0

    async def _load(self) -> CredentialRecord:
        cached = self._cached()
        if cached is not None:
            return cached
        async with self._lock:
            cached = self._cached()
            if cached is not None:
                return cached
            record = await asyncio.to_thread(self._read_sources)
            if record is None:
                raise MissingCredentialError(message="No Gmail tokens found. Please authenticate first.")
            self._remember(record)
            return record

    def _cached(self) -> CredentialRecord | None:
        if self._cache is not None and self._clock() < self._cache_expiry:
            return self._cache
        return None

    def _remember(self, record: CredentialRecord) -> None:
        self._cache = record
        self._cache_expiry = self._clock() + self._cache_ttl

    def _read_sources(self) -> CredentialRecord | None:
        record = self._store.read()
        if record is not None:
            return record
        LOGGER.debug("Secure store empty; trying %s", self._credentials_path)
        return self._read_file()

    def _read_file(self) -> CredentialRecord | None:
        path = self._credentials_path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Error reading local credentials %s: %s", path, exc)
            return None
        return CredentialRecord.from_mapping(data)


AnyCredentialResolver = Union[HeaderCredentialResolver, SessionCredentialResolver]


def _check_expiry(record: CredentialRecord, *, allow_expired: bool, now_ms: int, skew_ms: int = 0) -> None:
    if allow_expired or not record.is_expired(now_ms=now_ms, skew_ms=skew_ms):
        return
    raise ExpiredCredentialError(expiry_date=record.expiry_date)


def create_credential_resolver(
    settings: Settings,
    *,
    store: SecureCredentialStore | None = None,
) -> AnyCredentialResolver:
    """Select the credential source for this deployment."""

    if settings.credential_source == "header":
        LOGGER.debug("Using header credential resolver")
        return HeaderCredentialResolver(
            allow_expired=settings.allow_expired_credentials,
            expiry_skew_ms=settings.credential_expiry_skew_ms,
        )
    if settings.credential_source == "session":
        store_path = Path(settings.secure_store_path).expanduser() if settings.secure_store_path else None
        credentials_path = Path(settings.credentials_path).expanduser() if settings.credentials_path else None
        LOGGER.debug("Using session credential resolver")
        return SessionCredentialResolver(
            store or SecureCredentialStore(store_path),
            credentials_path=credentials_path,
            cache_ttl=settings.credential_cache_ttl,
            allow_expired=settings.allow_expired_credentials,
            expiry_skew_ms=settings.credential_expiry_skew_ms,
        )
    raise ValueError(f"Unknown credential source {settings.credential_source!r}")
