"""
Domain errors raised by the lifecycle, bidding and detection layers.

Routes translate these into `HTTPException` with `to_http_exception`; the
service modules never import FastAPI.
"""

from typing import Optional

from fastapi import HTTPException, status


class CiviReportError(Exception):
    """Base class for request-scoped domain errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, rule: Optional[str] = None, **context):
        super().__init__(message)
        self.message = message
        self.rule = rule
        self.context = context

    def detail(self) -> dict:
        body = {"error": type(self).__name__, "message": self.message}
        if self.rule:
            body["rule"] = self.rule
        body.update({k: (v.value if hasattr(v, "value") else v) for k, v in self.context.items()})
        return body


class ValidationError(CiviReportError):
    """Malformed input or missing required fields."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(CiviReportError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransition(CiviReportError):
    """The requested (from, to) pair is not in the transition table."""

    status_code = status.HTTP_409_CONFLICT


class Forbidden(CiviReportError):
    """The actor's role or identity does not permit the transition."""

    status_code = status.HTTP_403_FORBIDDEN


class PreconditionFailed(CiviReportError):
    status_code = status.HTTP_412_PRECONDITION_FAILED


class ConcurrencyConflict(CiviReportError):
    """The expected status is stale; safe to retry once with a fresh read."""

    status_code = status.HTTP_409_CONFLICT


class DetectionUnavailable(CiviReportError):
    """A detection signal could not be computed for a photo or the whole draft."""


def to_http_exception(exc: CiviReportError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail())
