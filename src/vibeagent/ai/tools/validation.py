"""JSON Schema validation of tool arguments."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import jsonschema
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .errors import InvalidArgumentsError

__all__ = ["ArgumentValidator", "MAX_SCHEMA_ERRORS"]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


def _format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    parts: list[str] = []
    for part in path:
        if isinstance(part, int):
            parts.append(f"[{part}]")
        else:
            parts.append(f".{part}" if parts else str(part))
    return "".join(parts)


class ArgumentValidator:
    """Validates argument objects against tool schemas.

    Validators are compiled once per tool name and reused for the lifetime of
    the catalogue that owns this instance.
    """

    def __init__(self) -> None:
        self._validators: dict[str, Any] = {}

    def validate(self, tool_name: str, schema: Mapping[str, Any] | None, arguments: Mapping[str, Any]) -> None:
        """Raise :class:`InvalidArgumentsError` when ``arguments`` violate ``schema``."""
        if not schema:
            return
        validator = self._validator(tool_name, schema)
        issues = sorted(validator.iter_errors(dict(arguments)), key=lambda issue: list(issue.absolute_path))
        if not issues:
            return

        messages: list[str] = []
        for issue in issues[:MAX_SCHEMA_ERRORS]:
            path = _format_schema_path(list(issue.absolute_path))
            messages.append(f"{path}: {issue.message}" if path else issue.message)
        first = issues[0]
        raise InvalidArgumentsError(
            message=f"Invalid arguments for '{tool_name}': {'; '.join(messages)}",
            tool_name=tool_name,
            path=_format_schema_path(list(first.absolute_path)) or None,
            details={"errors": messages, "error_count": len(issues)},
        )

    def _validator(self, tool_name: str, schema: Mapping[str, Any]) -> Any:
        cached = self._validators.get(tool_name)
        if cached is not None:
            return cached
        # Schemas without $schema default to the newest draft jsonschema ships.
        validator_cls = validator_for(schema, default=jsonschema.Draft202012Validator)
        try:
            validator_cls.check_schema(schema)
        except SchemaError as exc:
            LOGGER.warning("Tool %s declares an invalid schema: %s", tool_name, exc.message)
            raise InvalidArgumentsError(
                message=f"Tool '{tool_name}' declares an invalid argument schema: {exc.message}",
                tool_name=tool_name,
                suggestion="This tool cannot be called; use another tool",
            ) from exc
        validator = validator_cls(schema)
        self._validators[tool_name] = validator
        return validator

    def clear(self) -> None:
        self._validators.clear()
