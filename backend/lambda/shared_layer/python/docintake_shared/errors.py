"""docintake_shared.errors — Intake validation / business error taxonomy.

Every rejection raised while validating, composing or delegating an upload is
an ``IntakeError`` subclass. Handlers turn them into the standard error
envelope with ``http_utils._intake_error``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class IntakeError(ValueError):
    """Base class: short machine-readable code plus human message."""

    code = "INVALID_INPUT"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = dict(details)

    def to_details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.details)
        if self.field:
            out["field"] = self.field
        return out


class MissingField(IntakeError):
    """A required input was not supplied (type, filename, identifier, tenant, date)."""

    code = "MISSING_FIELD"


class InvalidFormat(IntakeError):
    """Input was supplied but does not match its grammar (date, extension)."""

    code = "INVALID_FORMAT"


class UnknownType(IntakeError):
    code = "UNKNOWN_TYPE"
    status_code = 404


class UnknownIdentifier(IntakeError):
    code = "UNKNOWN_IDENTIFIER"
    status_code = 404


class ComposeFailure(IntakeError):
    """Internal invariant violated while composing the canonical name."""

    code = "COMPOSE_FAILURE"
    status_code = 500


class DelegateFailure(IntakeError):
    """The object store failed or returned no usable signed URL."""

    code = "UPSTREAM_ERROR"
    status_code = 502
    retryable = True
