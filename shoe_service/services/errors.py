"""Typed failures raised by the lifecycle core."""
from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "LifecycleError",
    "InvalidTransition",
    "AlreadyClaimed",
    "StaffBusy",
    "Unauthorized",
    "ValidationError",
    "NotFound",
]


class LifecycleError(Exception):
    """Base class; ``code`` is a stable machine-readable tag."""

    code = "lifecycle_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class InvalidTransition(LifecycleError):
    code = "invalid_transition"


class AlreadyClaimed(LifecycleError):
    """Contention lost. An expected outcome of races, not a fault."""

    code = "already_claimed"

    def __init__(self, message: str, *, holder_id: Optional[int] = None, **details: Any) -> None:
        super().__init__(message, holder_id=holder_id, **details)
        self.holder_id = holder_id


class StaffBusy(AlreadyClaimed):
    code = "staff_busy"


class Unauthorized(LifecycleError):
    code = "unauthorized"


class ValidationError(LifecycleError):
    code = "validation_error"


class NotFound(LifecycleError):
    code = "not_found"
