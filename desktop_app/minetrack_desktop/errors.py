"""Domain errors raised by the operation tracker."""

from __future__ import annotations


class TrackerError(RuntimeError):
    """Base class for errors surfaced to the user interface."""


class ValidationError(TrackerError):
    """A request is incomplete or inconsistent; never retried automatically."""


class ConflictError(TrackerError):
    """The request clashes with the active operation or an in-flight request."""


class OperationNotActiveError(TrackerError):
    """The referenced operation is not the active one (or already stopped)."""


__all__ = ["ConflictError", "OperationNotActiveError", "TrackerError", "ValidationError"]
