"""
Error taxonomy.

Definition problems are loud: they are raised synchronously from the
registration or construction call. Request problems are soft: a Provider
catches them and delivers them as `provider:error` events.
"""

from typing import Any, Optional


class ModelSyncError(Exception):
    """Base error carrying a human-readable reason and an optional code."""

    def __init__(self, reason: str, code: Optional[Any] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code

    def to_dict(self) -> dict:
        return {"reason": self.reason, "code": self.code}


class DefinitionError(ModelSyncError):
    """Raised when a class schema cannot be registered."""
    pass


class UnknownModelError(ModelSyncError):
    """Raised when a model reference does not resolve to a registered schema."""
    pass


class RequestError(ModelSyncError):
    """Raised when a fetch returns a failure response."""
    pass
