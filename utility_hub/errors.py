"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "CONFIG_ERROR",
    "DOWNSTREAM_ERROR",
    "SCRIPT_ERROR",
    "STORAGE_ERROR",
    "INTERNAL_ERROR",
    "MISSING_REQUIRED",
    "TYPE_MISMATCH",
    "OUT_OF_RANGE",
    "ENUM_MISMATCH",
    "UtilityHubError",
    "ParameterValidationError",
    "SchemaCompileError",
    "error_payload",
]

NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
CONFIG_ERROR = "CONFIG_ERROR"
DOWNSTREAM_ERROR = "DOWNSTREAM_ERROR"
SCRIPT_ERROR = "SCRIPT_ERROR"
STORAGE_ERROR = "STORAGE_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

# Parameter validation failure kinds carried in ``details["kind"]``.
MISSING_REQUIRED = "MISSING_REQUIRED"
TYPE_MISMATCH = "TYPE_MISMATCH"
OUT_OF_RANGE = "OUT_OF_RANGE"
ENUM_MISMATCH = "ENUM_MISMATCH"


@dataclass(slots=True)
class UtilityHubError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


class ParameterValidationError(UtilityHubError):
    """Raised when a single argument fails its compiled parameter validator."""

    def __init__(self, kind: str, parameter: str, message: str) -> None:
        super().__init__(VALIDATION_ERROR, message, details={"kind": kind, "parameter": parameter})

    @property
    def kind(self) -> str:
        return str((self.details or {}).get("kind", ""))

    @property
    def parameter(self) -> str:
        return str((self.details or {}).get("parameter", ""))


class SchemaCompileError(UtilityHubError):
    """Raised when a declarative schema cannot be turned into a validator."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(VALIDATION_ERROR, message, details=details)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload used in admin responses."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
