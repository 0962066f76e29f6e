"""Deployment settings and secret helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "SecretProvider",
    "FernetSecretProvider",
    "CREDENTIAL_SOURCES",
    "MODEL_PROVIDERS",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".vibeagent"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "VIBEAGENT_API_KEY": "api_key",
    "VIBEAGENT_PROVIDER": "provider",
    "VIBEAGENT_BASE_URL": "base_url",
    "VIBEAGENT_MODEL": "model",
    "VIBEAGENT_ORGANIZATION": "organization",
    "VIBEAGENT_CREDENTIAL_SOURCE": "credential_source",
    "VIBEAGENT_CREDENTIALS_PATH": "credentials_path",
    "VIBEAGENT_SECURE_STORE_PATH": "secure_store_path",
    "VIBEAGENT_LOG_LEVEL": "log_level",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "VIBEAGENT_DEBUG_LOGGING": "debug_logging",
    "VIBEAGENT_ALLOW_EXPIRED_CREDENTIALS": "allow_expired_credentials",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "VIBEAGENT_REQUEST_TIMEOUT": "request_timeout",
    "VIBEAGENT_TEMPERATURE": "temperature",
    "VIBEAGENT_TOOL_TIMEOUT": "tool_timeout",
    "VIBEAGENT_CREDENTIAL_CACHE_TTL": "credential_cache_ttl",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "VIBEAGENT_MAX_ITERATIONS": "max_iterations",
    "VIBEAGENT_MAX_RETRIES": "max_retries",
    "VIBEAGENT_MAX_OUTPUT_TOKENS": "max_output_tokens",
    "VIBEAGENT_HISTORY_LIMIT": "history_limit",
    "VIBEAGENT_CREDENTIAL_EXPIRY_SKEW_MS": "credential_expiry_skew_ms",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"

CredentialSource = Literal["header", "session"]
CREDENTIAL_SOURCES: tuple[str, ...] = ("header", "session")
ModelProvider = Literal["openai", "anthropic"]
MODEL_PROVIDERS: tuple[str, ...] = ("openai", "anthropic")


@dataclass(slots=True)
class Settings:
    """Deployment configuration for one agent process."""

    provider: ModelProvider = "openai"
    base_url: str | None = None
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_output_tokens: int = 4096
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_iterations: int = 8
    tool_timeout: float = 30.0
    history_limit: int = 20
    context_token_budget: int = 96_000
    credential_source: CredentialSource = "header"
    credentials_path: str | None = None
    secure_store_path: str | None = None
    credential_cache_ttl: float = 300.0
    allow_expired_credentials: bool = True
    credential_expiry_skew_ms: int = 0
    remote_tool_servers: list[dict[str, Any]] = field(default_factory=list)
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.provider not in MODEL_PROVIDERS:
            raise ValueError(f"provider must be one of {', '.join(MODEL_PROVIDERS)}; got {self.provider!r}")
        if self.credential_source not in CREDENTIAL_SOURCES:
            raise ValueError(
                f"credential_source must be one of {', '.join(CREDENTIAL_SOURCES)}; got {self.credential_source!r}"
            )
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be positive")
        if self.max_output_tokens < 1:
            raise ValueError("max_output_tokens must be at least 1")
        if self.credential_expiry_skew_ms < 0:
            raise ValueError("credential_expiry_skew_ms must not be negative")


class SecretProvider(ABC):
    """Interface for encrypting and decrypting sensitive strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        """Return an encoded representation of ``secret`` suitable for storage."""

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Return the plaintext representation of ``token``."""


class FernetSecretProvider(SecretProvider):
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "secrets.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = self._get_fernet().decrypt(token.encode("ascii"))
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            key = self._load_or_create_key()
            self._fernet = Fernet(key)
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts sensitive strings with a prefixed token format."""

    def __init__(
        self,
        *,
        key_path: Path | None = None,
        provider: SecretProvider | None = None,
    ) -> None:
        self._provider = provider or FernetSecretProvider(key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        payload = self._provider.encrypt(secret)
        return f"{self._provider.name}:{payload}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, payload = self._split_token(token)
        if prefix not in (None, self._provider.name):
            raise ValueError(f"Secret was encrypted with unsupported backend {prefix!r}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    @staticmethod
    def _split_token(token: str) -> tuple[str | None, str]:
        if ":" not in token:
            return None, token
        prefix, payload = token.split(":", 1)
        return (prefix or None), payload


class SettingsStore:
    """Loads :class:`Settings` from a JSON file plus environment overrides."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        key_path = self._path.with_suffix(".key")
        self._vault = vault or SecretVault(key_path=key_path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime then environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Settings payload in %s is invalid: %s", self._path, exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")

        return self._apply_env_overrides(settings)

    def encrypt_api_key(self, api_key: str) -> str:
        """Return the ciphertext to store under ``api_key_ciphertext``."""
        return self._vault.encrypt(api_key)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s must contain a JSON object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_key(self, ciphertext: str | None, plaintext: str | None) -> str:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return ""
        if plaintext:
            LOGGER.info("Settings file %s stores a plaintext API key", self._path)
            return plaintext
        return ""


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
