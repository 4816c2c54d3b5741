"""
Error taxonomy for the progress engine.

Every error carries the HTTP status the API layer answers with; the single
exception handler in ``app.main`` turns them into ``{"detail": ...}`` bodies.
``ConfigurationStale`` never reaches a caller: the evaluator logs it and moves on.
"""

from fastapi import status


class ProgressError(Exception):
    """Base class for all engine errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ReferenceNotFound(ProgressError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, collection: str, ref_id: object):
        super().__init__(f"{collection} {ref_id} not found")
        self.collection = collection
        self.ref_id = ref_id


class UnknownCriterion(ProgressError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ScoreOutOfRange(ProgressError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidHours(ProgressError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidRule(ProgressError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidPipeline(ProgressError):
    status_code = status.HTTP_400_BAD_REQUEST


class ImmutableRecord(ProgressError):
    status_code = status.HTTP_409_CONFLICT


class ConfigurationStale(ProgressError):
    """An unlock rule points at catalog data that no longer exists."""


class StorageUnavailable(ProgressError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidInput(ProgressError):
    """Catalog or child data that breaks a data-model invariant."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class DuplicateRecord(ProgressError):
    status_code = status.HTTP_409_CONFLICT
