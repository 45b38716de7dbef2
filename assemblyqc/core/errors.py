"""Error taxonomy for AssemblyQC.

Every error carries a stable ``code`` so that bulk results, CLI output and
HTTP responses can report the failure without leaking exception classes.
Only ``PersistenceFailure`` is retryable; everything else means the input
has to change.
"""

from __future__ import annotations


class AssemblyQCError(Exception):
    """Base class for all domain errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.context}


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


class CalibrationError(AssemblyQCError):
    """Calibration input cannot produce a usable transform."""

    code = "calibration_error"


class InsufficientPointsError(CalibrationError):
    code = "insufficient_points"


class SingularConfigurationError(CalibrationError):
    code = "singular_configuration"


class DegenerateProjectionError(CalibrationError):
    code = "degenerate_projection"


class NotCalibratedError(AssemblyQCError):
    """No transform exists yet. Expected while a project is being set up."""

    code = "not_calibrated"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class IdentityError(AssemblyQCError):
    code = "identity_error"


class DuplicateGuidError(IdentityError):
    code = "duplicate_guid"


class ConflictingGuidError(IdentityError):
    code = "conflicting_guid"


class NotFoundError(IdentityError):
    code = "not_found"


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class InvalidTransitionError(AssemblyQCError):
    code = "invalid_transition"


class ValidationFailure(AssemblyQCError):
    """Request is missing mandatory data (reviewer, comment, members...)."""

    code = "validation_failure"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class PersistenceFailure(AssemblyQCError):
    """Collaborator I/O failed. The caller may retry with backoff."""

    code = "persistence_failure"
    retryable = True


class AuditLogImmutableError(AssemblyQCError):
    code = "audit_log_immutable"
