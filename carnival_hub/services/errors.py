"""
Error kinds raised by the carnival core.

Every command either returns its payload or raises one of these. The HTTP
layer maps ``kind`` (or ``http_status``) onto a response; the advisory
``message`` is safe to show to the user.
"""

import enum
from typing import Optional

from pydantic import BaseModel, ValidationError


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    INVALID = "invalid"
    GONE = "gone"
    INTERNAL = "internal"


HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID: 400,
    ErrorKind.GONE: 410,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """Base class for all failures a command can report."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class NotFoundError(ServiceError, LookupError):
    """Raised when a referenced entity does not exist or is inactive."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(ServiceError, PermissionError):
    """Raised when the actor may not perform the command."""

    kind = ErrorKind.FORBIDDEN


class ConflictError(ServiceError, ValueError):
    """Raised on uniqueness violations and state-machine misuse."""

    kind = ErrorKind.CONFLICT


class InvalidError(ServiceError, ValueError):
    """Raised when input fails domain validation."""

    kind = ErrorKind.INVALID


class GoneError(ServiceError, ValueError):
    """Raised when an invitation token is expired or already consumed."""

    kind = ErrorKind.GONE


class InternalError(ServiceError):
    """Raised when the store or a collaborator fails unexpectedly."""

    kind = ErrorKind.INTERNAL


def invalid_from_validation(exc: ValidationError, prefix: Optional[str] = None) -> InvalidError:
    """
    Turn a pydantic ValidationError into an InvalidError.

    The message names the first failing field, e.g. "player_count: Input
    should be less than or equal to 100".
    """
    errors = exc.errors()
    if not errors:
        return InvalidError(prefix or "Invalid input")
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    text = f"{location}: {message}" if location else message
    if prefix:
        text = f"{prefix}: {text}"
    return InvalidError(text)


def validate(schema, data):
    """
    Parse command input with a pydantic schema.

    Instances of the schema pass through untouched, so callers may hand over
    an already validated model. Dicts keep their "fields set" information for
    partial updates.

    Raises:
        InvalidError: If the input fails validation
    """
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return schema.model_validate(data or {})
    except ValidationError as exc:
        raise invalid_from_validation(exc) from exc
