"""Logging setup for processes embedding the agent runtime."""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Any

__all__ = ["setup_logging", "configure_from_settings", "get_log_path", "SecretRedactingFilter"]

_DEFAULT_LOG_DIR = Path.home() / ".vibeagent" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None

# Bearer tokens, OpenAI style keys and Google OAuth tokens.
_SECRET_RE = re.compile(r"(Bearer\s+|sk-|ya29\.|1//)([A-Za-z0-9._\-]{6,})")


class SecretRedactingFilter(logging.Filter):
    """Masks credential-looking substrings in rendered log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _SECRET_RE.sub(lambda match: f"{match.group(1)}{match.group(2)[:2]}***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with rotating file + optional console handlers."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    numeric_level = _coerce_level(level)
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "vibeagent.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    redactor = SecretRedactingFilter()

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handlers.append(file_handler)
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(numeric_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def configure_from_settings(settings: Any, **kwargs: Any) -> Path:
    """Apply ``settings.log_level``; ``debug_logging`` forces DEBUG."""

    level = logging.DEBUG if getattr(settings, "debug_logging", False) else getattr(settings, "log_level", "INFO")
    return setup_logging(level, **kwargs)


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("VIBEAGENT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
