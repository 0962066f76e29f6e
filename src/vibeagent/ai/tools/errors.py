"""Standardized error types for agent tools.

Every failure that originates from tool execution or from the shape of model
output is expressed as a :class:`ToolError`. The dispatcher converts these into
observations so the reasoning loop can continue; they never abort a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool observations."""

    # Dispatch errors
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    MALFORMED_TOOL_CALL = "malformed_tool_call"

    # Execution errors
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_EXECUTION_ERROR = "tool_execution_error"

    # Credential errors
    MISSING_CREDENTIAL = "missing_credential"
    EXPIRED_CREDENTIAL = "expired_credential"

    # General errors
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance the model can use to recover.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for observation payloads."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Dispatch Errors
# -----------------------------------------------------------------------------

@dataclass
class UnknownToolError(ToolError):
    """Raised when a tool call names a tool missing from the catalogue."""

    error_code: str = field(default=ErrorCode.UNKNOWN_TOOL)
    message: str = field(default="The requested tool is not available")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use one of the tools listed in <tools>")

    tool_name: str | None = field(default=None)
    available: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        if self.available:
            result["available_tools"] = list(self.available)
        return result


@dataclass
class InvalidArgumentsError(ToolError):
    """Raised when tool arguments do not satisfy the declared schema."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Tool arguments do not match the declared schema")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check parameter names and types against parameters_json_schema")

    tool_name: str | None = field(default=None)
    path: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        if self.path:
            result["path"] = self.path
        return result


@dataclass
class MalformedToolCallError(ToolError):
    """Raised when a tool_call payload could not be parsed."""

    error_code: str = field(default=ErrorCode.MALFORMED_TOOL_CALL)
    message: str = field(default="The tool_call payload is not valid JSON")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(
        default='Emit {"name": "tool_name", "arguments": {...}, "id": "call_001"} inside <tool_call>'
    )

    raw_payload: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.raw_payload is not None:
            result["raw_payload"] = self.raw_payload[:500]
        return result


# -----------------------------------------------------------------------------
# Execution Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolTimeoutError(ToolError):
    """Raised when a tool exceeds its execution budget."""

    error_code: str = field(default=ErrorCode.TOOL_TIMEOUT)
    message: str = field(default="Tool execution timed out")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Try again with a narrower request or use another tool")

    timeout_seconds: float | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        return result


@dataclass
class ToolExecutionError(ToolError):
    """Raised when a tool fails while executing."""

    error_code: str = field(default=ErrorCode.TOOL_EXECUTION_ERROR)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        return result


# -----------------------------------------------------------------------------
# Credential Errors
# -----------------------------------------------------------------------------

@dataclass
class MissingCredentialError(ToolError):
    """Raised when a required credential field is absent or blank."""

    error_code: str = field(default=ErrorCode.MISSING_CREDENTIAL)
    message: str = field(default="Required credentials are not available")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Answer without this tool or ask the user to connect the account")

    field_name: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field_name is not None:
            result["field"] = self.field_name
        return result


@dataclass
class ExpiredCredentialError(ToolError):
    """Raised when the stored credential has passed its expiry."""

    error_code: str = field(default=ErrorCode.EXPIRED_CREDENTIAL)
    message: str = field(default="Stored credentials have expired")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Answer without this tool or ask the user to reconnect the account")

    expiry_date: int | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.expiry_date is not None:
            result["expiry_date"] = self.expiry_date
        return result


# -----------------------------------------------------------------------------
# Model Errors
# -----------------------------------------------------------------------------

class ModelTransportError(RuntimeError):
    """Raised when the model generation capability itself fails.

    Unlike :class:`ToolError` this is not recoverable inside a run.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------

def error_from_dict(data: Mapping[str, Any]) -> ToolError:
    """Reconstruct a ToolError from its dictionary representation.

    Remote tool servers report failures as plain dictionaries; this keeps the
    code and message intact without recovering the concrete subclass.
    """
    return ToolError(
        error_code=str(data.get("error", ErrorCode.INTERNAL_ERROR)),
        message=str(data.get("message", "Unknown error")),
        details=dict(data.get("details", {})),
        suggestion=str(data.get("suggestion", "")),
    )


__all__ = [
    "ErrorCode",
    "ToolError",
    "UnknownToolError",
    "InvalidArgumentsError",
    "MalformedToolCallError",
    "ToolTimeoutError",
    "ToolExecutionError",
    "MissingCredentialError",
    "ExpiredCredentialError",
    "ModelTransportError",
    "error_from_dict",
]
