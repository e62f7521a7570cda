"""
Error taxonomy for Attendance Service.

Every error raised by the enrollment and attendance pipeline derives from
AttendanceError. The HTTP layer maps each subclass to a status code.
"""

from typing import Optional


class AttendanceError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(AttendanceError):
    """Malformed or missing request fields. Never retried automatically."""

    def __init__(self, message: str, image_index: Optional[int] = None):
        super().__init__(message)
        self.image_index = image_index


class ConflictError(AttendanceError):
    """Identity key or external key is already enrolled."""


class ValidationError(AttendanceError):
    """
    Enrollment images violate a face rule.

    Terminal for the enrollment attempt; nothing has been persisted.
    """

    def __init__(self, message: str, image_index: Optional[int] = None):
        super().__init__(message)
        self.image_index = image_index

    def __str__(self) -> str:
        if self.image_index is None:
            return self.message
        return f'{self.message} (image {self.image_index})'


class ExtractionError(AttendanceError):
    """A single image could not be decoded or run through the face model."""


class IntakeError(AttendanceError):
    """Image bytes could not be fetched from a path or URL."""

    def __init__(self, message: str, ref: str = ''):
        super().__init__(message)
        self.ref = ref


class StoreError(AttendanceError):
    """Persistence failure."""


class NotReadyError(AttendanceError):
    """A core operation was requested before runtime initialization finished."""
