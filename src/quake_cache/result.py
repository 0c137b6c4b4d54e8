"""Result type shared by every call site that can fail without raising."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(enum.Enum):
    CONFIGURATION = "configuration"   # missing store, missing parameter
    UPSTREAM = "upstream"             # network failure or non-2xx from the feed
    VALIDATION = "validation"         # a single record is missing required fields
    PERSISTENCE = "persistence"       # the batch write raised
    PARSE = "parse"                   # body or stored feature is not valid JSON


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    status: int | None = None

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "status": self.status}


Result = Union[Ok[T], Err]


class ValidationError(Exception):
    """Raised when a feature fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")
