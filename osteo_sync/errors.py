"""Exceptions raised by the synchronisation core."""
from __future__ import annotations


class PracticeDataError(RuntimeError):
    """Base exception for practice data errors."""


class NotFound(PracticeDataError):
    """Raised when the entity an operation targets does not exist."""


class ReferenceNotFound(NotFound):
    """Raised when a foreign key points at a patient that does not exist."""


class PermissionDenied(PracticeDataError):
    """Raised when a record belongs to another osteopath."""


class StoreUnavailable(PracticeDataError):
    """Raised when the backing document store cannot be reached or errors out."""


class InvalidTransition(PracticeDataError):
    """Raised when an appointment status change is not allowed."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move appointment from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class InvalidRecord(PracticeDataError):
    """Raised when a stored or submitted record does not fit its model."""
