"""Error taxonomy and the result object returned by the lifecycle engine.

Repositories raise these errors. The lifecycle engine catches the domain
kinds and hands them back inside an ``OperationResult`` so callers can branch
on ``result.error_kind`` instead of wrapping every call in ``try``.
``StorageError`` is not a domain outcome and always propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class LibraryError(Exception):
    """Base class for library errors."""

    kind = "library_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LibraryError, LookupError):
    """A referenced entity does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str] = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        if entity_id:
            message = f"{entity.capitalize()} {entity_id} not found"
        else:
            message = f"{entity.capitalize()} not found"
        super().__init__(message)


class ValidationError(LibraryError, ValueError):
    """Malformed input such as an empty rejection reason or bad copy counts."""

    kind = "validation"


class InvalidStateError(LibraryError):
    """The entity is already in a terminal or incompatible state."""

    kind = "invalid_state"


class CapacityError(LibraryError):
    """No copies are available at approval time."""

    kind = "capacity"


class StorageError(LibraryError):
    """The underlying store failed; the transaction was rolled back."""

    kind = "storage"


DOMAIN_ERRORS = (NotFoundError, ValidationError, InvalidStateError, CapacityError)


@dataclass
class OperationResult(Generic[T]):
    """Success value or a domain error, never both."""

    value: Optional[T] = None
    error: Optional[LibraryError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LibraryError) -> "OperationResult[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None

    def unwrap(self) -> Optional[T]:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value
