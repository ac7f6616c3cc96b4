"""Domain level exceptions and helpers shared by services and repositories."""

from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import exc as sa_exc

__all__ = [
    "AppError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "DeliveryError",
    "OutboxPayloadError",
    "RepositoryError",
    "IntegrityConstraintViolation",
    "DatabaseOperationError",
    "ERROR_MESSAGE_MAX_LENGTH",
    "handle_sqlalchemy_errors",
    "sanitize_error_message",
]

ERROR_MESSAGE_MAX_LENGTH = 1000


class AppError(Exception):
    """Base class for application specific errors."""


class ValidationError(AppError):
    """Raised when a request is malformed; no state is mutated."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(AppError):
    """Raised when a job, tenant resource or record could not be located."""


class InvalidTransitionError(AppError):
    """Raised when the job state machine rejects a requested move."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"cannot {requested} job '{job_id}' while it is {current}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class UpstreamError(AppError):
    """Raised when the extraction service fails or returns garbage."""


class UpstreamTimeoutError(UpstreamError):
    """Raised when the extraction service does not answer in time."""


class DeliveryError(AppError):
    """Raised by a broadcast transport that rejected (part of) a batch.

    ``accepted`` counts the leading events of the batch the transport did
    deliver before failing; the event at that index is the rejected one.
    """

    def __init__(self, message: str, *, accepted: int = 0) -> None:
        super().__init__(message)
        self.accepted = max(0, accepted)


class OutboxPayloadError(AppError):
    """Raised when event data violates the per-type allow-list or size cap."""


class RepositoryError(AppError):
    """Base class for persistence layer failures."""


class IntegrityConstraintViolation(RepositoryError):
    """Raised when a database constraint is violated."""


class DatabaseOperationError(RepositoryError):
    """Raised for unexpected database errors."""


@dataclass(slots=True)
class _EntityContext:
    """Internal helper describing the entity for error messages."""

    entity: str | None = None

    def format(self, message: str) -> str:
        if self.entity:
            return f"{self.entity}: {message}"
        return message


def _translate_sqlalchemy_error(exc: Exception, *, context: _EntityContext) -> RepositoryError:
    if isinstance(exc, sa_exc.IntegrityError):
        return IntegrityConstraintViolation(context.format("integrity constraint violated"))
    if isinstance(exc, sa_exc.DBAPIError):
        return DatabaseOperationError(context.format("database operation failed"))
    return RepositoryError(context.format(str(exc)))


@contextmanager
def handle_sqlalchemy_errors(*, entity: str | None = None) -> Iterator[None]:
    """Translate SQLAlchemy errors into domain specific ones."""

    context = _EntityContext(entity)
    try:
        yield
    except (sa_exc.IntegrityError, sa_exc.DBAPIError) as exc:
        raise _translate_sqlalchemy_error(exc, context=context) from exc


_TRACEBACK_RE = re.compile(r"Traceback \(most recent call last\):.*", re.DOTALL)
_URL_RE = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)
_KEY_RE = re.compile(r"\b(key|token|secret|password)=\S+", re.IGNORECASE)
_UUID_RE = re.compile(
    r"\b[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_error_message(
    message: object, *, max_length: int = ERROR_MESSAGE_MAX_LENGTH
) -> str:
    """Return an error message that is safe to show to end users.

    Stack traces, URLs, credential-looking pairs and internal identifiers are
    removed, whitespace is collapsed and the result is truncated.
    """

    text = str(message or "")
    text = _TRACEBACK_RE.sub("", text)
    text = _URL_RE.sub("[url]", text)
    text = _KEY_RE.sub(lambda match: f"{match.group(1)}=[redacted]", text)
    text = _UUID_RE.sub("[id]", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if not text:
        text = "Unknown error"
    if len(text) > max_length:
        text = text[: max_length - 3].rstrip() + "..."
    return text
