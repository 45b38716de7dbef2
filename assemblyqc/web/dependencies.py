"""Shared dependencies for AssemblyQC web routes.

Usage:
    from fastapi import Depends
    from assemblyqc.web.dependencies import get_actor, http_errors

    @router.post("/things")
    async def create(actor: Actor = Depends(get_actor), db=Depends(get_db)):
        with http_errors():
            ...
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import Header, HTTPException, status

from assemblyqc.core.errors import (
    AssemblyQCError,
    AuditLogImmutableError,
    CalibrationError,
    ConflictingGuidError,
    DuplicateGuidError,
    InvalidTransitionError,
    NotCalibratedError,
    NotFoundError,
    PersistenceFailure,
    ValidationFailure,
)
from assemblyqc.core.logging import bind_actor
from assemblyqc.models import Actor

# Most specific first; the first isinstance match wins
ERROR_STATUS: list[tuple[type[AssemblyQCError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateGuidError, status.HTTP_409_CONFLICT),
    (ConflictingGuidError, status.HTTP_409_CONFLICT),
    (AuditLogImmutableError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailure, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CalibrationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotCalibratedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PersistenceFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: AssemblyQCError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@contextmanager
def http_errors() -> Iterator[None]:
    """Translate domain errors raised inside the block into ``HTTPException``."""
    try:
        yield
    except AssemblyQCError as exc:
        raise HTTPException(status_code=status_for(exc), detail=exc.to_dict()) from exc


def get_actor(
    x_actor_email: str = Header(..., description="Acting user's email"),
    x_actor_name: str | None = Header(default=None),
    x_actor_role: str = Header(default="inspector"),
) -> Actor:
    """Build the acting user from request headers.

    Authentication happens in front of this service; it forwards the
    authenticated identity in ``X-Actor-*`` headers.
    """
    if not x_actor_email.strip():
        raise HTTPException(status_code=401, detail="X-Actor-Email header is required")
    bind_actor(x_actor_email)
    return Actor(email=x_actor_email, name=x_actor_name, role=x_actor_role)
