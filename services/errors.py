"""Exceptions raised by the entity store, the resolver and the aggregate cache."""
from __future__ import annotations

from typing import Any, Optional


class ConsolidationError(RuntimeError):
    """Base class for every error raised by this package."""


class ResolutionFailure(ConsolidationError):
    """Raised when a legacy record cannot be matched to a known project."""

    def __init__(self, identifier: Any = None, name: Optional[str] = None):
        self.identifier = identifier
        self.name = name
        if name:
            message = f'Project "{name}" not found'
        elif identifier is not None:
            message = f"Project ID {identifier} not found"
        else:
            message = "Record carries no project reference"
        super().__init__(message)


class StoreError(ConsolidationError):
    """Raised when the entity store rejects or cannot commit a write."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class IntegrityViolation(StoreError):
    """The write broke a constraint (unique key, dangling foreign key, ...)."""


class TransactionFailure(StoreError):
    """The transaction could not commit and was rolled back."""


class CacheError(ConsolidationError):
    """Base class for aggregate cache failures."""

    def __init__(self, message: str, key: Any = None):
        super().__init__(message)
        self.key = key


class CacheComputeFailure(CacheError):
    """The compute function raised; the original error is the __cause__."""


class CacheComputeTimeout(CacheError):
    """The compute function did not finish within the caller's timeout."""

    def __init__(self, message: str, key: Any = None, timeout: Optional[float] = None):
        super().__init__(message, key)
        self.timeout = timeout
