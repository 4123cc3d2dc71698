"""Error taxonomy for the project store.

NotFound and Conflict are expected outcomes the request layer turns into
user-facing responses. StorageFailure is logged with context by the code that
raises it and surfaces as a generic failure.
"""
from __future__ import annotations


class ProjectStoreError(Exception):
    status_code: int = 500

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(ProjectStoreError):
    status_code = 404


class Conflict(ProjectStoreError):
    status_code = 409


class IntegrityViolation(Conflict):
    """A catalog uniqueness constraint tripped by a concurrent request."""


class ValidationFailure(ProjectStoreError):
    status_code = 400


class DocumentParseError(ValidationFailure):
    pass


class StorageFailure(ProjectStoreError):
    status_code = 500


class InconsistentSave(StorageFailure):
    """Blobs were written but could not all be read back."""
