"""Errors raised by the match-sheet pipeline.

Every error carries the stage it happened in so callers can tell a bad
request from a storage outage from a data integrity problem.
"""

from typing import Optional


class PipelineError(Exception):
    """Base error for a failed pipeline stage."""

    code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        stage: str = "REQUEST",
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        document_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.document_id = document_id

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
            "document_id": self.document_id,
        }


class ScopeValidationError(PipelineError):
    """Scope and match identifiers do not agree."""

    code = "SCOPE_VALIDATION_ERROR"
    status_code = 400


class RequestValidationError(PipelineError):
    code = "INVALID_REQUEST"
    status_code = 400


class UnsupportedMediaError(PipelineError):
    code = "UNSUPPORTED_MEDIA_TYPE"
    status_code = 415


class DocumentNotFoundError(PipelineError):
    code = "DOCUMENT_NOT_FOUND"
    status_code = 404


class MatchNotFoundError(PipelineError):
    code = "MATCH_NOT_FOUND"
    status_code = 404


class InvalidTransitionError(PipelineError):
    """Stage input missing for the requested document transition."""

    code = "INVALID_DOCUMENT_STATE"
    status_code = 409


class StorageError(PipelineError):
    code = "STORAGE_ERROR"
    status_code = 502


class TextExtractionError(PipelineError):
    code = "TEXT_EXTRACTION_FAILED"
    status_code = 422


class CanonicalParseError(PipelineError):
    code = "CANONICAL_PARSE_FAILED"
    status_code = 422


class UpstreamError(PipelineError):
    """Fixture source unreachable or returned an unusable response."""

    code = "UPSTREAM_ERROR"
    status_code = 502


class IntegrityViolation(PipelineError):
    """A write would break a storage invariant (scope, uniqueness, derived rows)."""

    code = "INTEGRITY_VIOLATION"
    status_code = 500


def truncate_message(message: str, max_chars: int = 300) -> str:
    text = str(message or "").strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars]
