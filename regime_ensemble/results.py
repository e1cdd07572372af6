"""
Outcome and Capability Types
============================

Every public operation that can legitimately be "not ready" (too little data,
an untrained model, a cancelled fit) returns a Result instead of raising.
Exceptions are reserved for caller bugs and are all ConfigurationError.

Optional collaborators (a regime detector, a signal predictor) are passed
around as an explicit capability: Available(model) or UNAVAILABLE.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

T = TypeVar('T')
M = TypeVar('M')

# Cooperative cancellation hook checked between EM iterations / epochs
StopCheck = Callable[[], bool]


# =============================================================================
# ERRORS
# =============================================================================

class ConfigurationError(ValueError):
    """Raised for caller bugs such as shape mismatches or malformed payloads."""


# =============================================================================
# RESULT TYPE
# =============================================================================

class Status(Enum):
    """Outcome of an operation that can legitimately fail to produce a value."""
    SUCCESS = "success"
    INSUFFICIENT_DATA = "insufficient_data"
    NOT_TRAINED = "not_trained"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Discriminated success/failure value.

    Attributes:
        status: Outcome discriminator
        value: Payload, present only on success
        message: Human-readable reason on failure
    """
    status: Status
    value: Optional[T] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCESS

    def unwrap(self) -> T:
        """Return the payload or raise if the operation did not succeed."""
        if not self.ok:
            raise RuntimeError(f"{self.status.value}: {self.message}")
        return self.value

    @classmethod
    def success(cls, value: T) -> 'Result[T]':
        return cls(Status.SUCCESS, value)

    @classmethod
    def failure(cls, status: Status, message: str) -> 'Result[T]':
        if status is Status.SUCCESS:
            raise ValueError("failure() needs a non-success status")
        return cls(status, None, message)

    def to_dict(self) -> dict:
        value = self.value
        if hasattr(value, 'to_dict'):
            value = value.to_dict()
        return {'status': self.status.value, 'message': self.message, 'value': value}


# =============================================================================
# CAPABILITY TYPE
# =============================================================================

@dataclass(frozen=True)
class Available(Generic[M]):
    """A collaborator that is present and ready for inference."""
    model: M


class _Unavailable:
    """Singleton marker for a missing or untrained collaborator."""

    _instance: Optional['_Unavailable'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE = _Unavailable()

Capability = Union[Available[Any], _Unavailable]


def capability(model: Any) -> Capability:
    """
    Wrap an optional model as a capability.

    A model is available only when it is not None and reports trained=True.
    """
    if model is None:
        return UNAVAILABLE
    if isinstance(model, (Available, _Unavailable)):
        return model
    if not getattr(model, 'trained', False):
        return UNAVAILABLE
    return Available(model)
