"""User-facing error values and the Ok/Err result type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

# purpose: model expected failures as values so resolvers can render them
# status: stable

T = TypeVar("T")

AUTHENTICATION_ERROR = "authenticationError"
VALIDATION_ERROR = "validationError"
CONFLICT_ERROR = "conflictError"


@dataclass(frozen=True)
class KBError:
    type: str
    code: str
    message: str
    param: str | None = None


def unauthenticated_error() -> KBError:
    return KBError(AUTHENTICATION_ERROR, "unauthenticated", "You must be logged in to do this")


def permission_error(message: str = "You do not have permission to do this") -> KBError:
    return KBError(AUTHENTICATION_ERROR, "insufficientPermission", message)


def already_exists_error(message: str = "This already exists", param: str | None = None) -> KBError:
    return KBError(VALIDATION_ERROR, "alreadyExists", message, param)


def invalid_value_error(message: str, param: str | None = None) -> KBError:
    return KBError(VALIDATION_ERROR, "invalidValue", message, param)


def not_found_error(param: str | None = None) -> KBError:
    return KBError(VALIDATION_ERROR, "notFound", "Not found", param)


def already_modified_error() -> KBError:
    return KBError(
        CONFLICT_ERROR,
        "alreadyModified",
        "This has been modified since you loaded it. Please refresh and try again.",
    )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: KBError


Result = Union[Ok[T], Err]


class DisallowedInputKeysError(ValueError):
    """Caller handed system-managed fields to a versioned mutation."""

    def __init__(self, keys: list[str]):
        self.keys = sorted(keys)
        super().__init__(f"Unexpected keys in user input: {', '.join(self.keys)}")
