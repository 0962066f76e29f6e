"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os
import time

import pytest

from vibeagent.services.credentials import (
    HEADER_ACCESS_TOKEN,
    HEADER_REFRESH_TOKEN,
    HEADER_TOKEN_EXPIRY,
    HEADER_TOKEN_TYPE,
)
from vibeagent.services.settings import SecretVault


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("VIBEAGENT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("VIBEAGENT_LOG_DIR", str(tmp_path / "logs"))
    logging.getLogger("vibeagent").setLevel(logging.DEBUG)


@pytest.fixture
def gmail_headers() -> dict[str, str]:
    future = int(time.time() * 1000) + 3_600_000
    return {
        HEADER_ACCESS_TOKEN: " ya29.access ",
        HEADER_REFRESH_TOKEN: "1//refresh",
        HEADER_TOKEN_EXPIRY: str(future),
        HEADER_TOKEN_TYPE: "Bearer",
    }


@pytest.fixture
def vault(tmp_path) -> SecretVault:
    return SecretVault(key_path=tmp_path / "secrets.key")
