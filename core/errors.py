"""Error taxonomy shared by every layer.

Retryable kinds (``RateLimited``, ``TransientNetworkError``) are absorbed by
the remote client up to its attempt ceiling; all other kinds are terminal.
"""

import time
from typing import Any, List, Optional, Sequence, Tuple


class TaskStoreError(RuntimeError):
    """Base class for every error raised by this package."""

    retryable = False


class AuthError(TaskStoreError):
    """Credential missing, rejected, or capability check not yet passed."""


class RateLimited(TaskStoreError):
    retryable = True

    def __init__(self, message: str, resume_at: Optional[float] = None, retry_after: Optional[float] = None, attempts: int = 0):
        super().__init__(message)
        now = time.time()
        if resume_at is None and retry_after is not None:
            resume_at = now + retry_after
        if retry_after is None and resume_at is not None:
            retry_after = max(0.0, resume_at - now)
        self.resume_at = resume_at
        self.retry_after = retry_after
        self.attempts = attempts


class TransientNetworkError(TaskStoreError):
    retryable = True

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ValidationError(TaskStoreError):
    def __init__(self, message: str, issues: Optional[Sequence[Any]] = None):
        super().__init__(message)
        self.issues: List[Any] = list(issues or [])


class NotFoundError(TaskStoreError):
    pass


class ConfigurationError(TaskStoreError):
    pass


class StorageError(TaskStoreError):
    """Local task document could not be read or written."""


class PersistenceError(TaskStoreError):
    """Every backend attempted for an operation failed."""

    def __init__(self, message: str, attempted: Optional[Sequence[Tuple[str, str]]] = None):
        self.attempted: List[Tuple[str, str]] = list(attempted or [])
        if self.attempted:
            details = "; ".join(f"{name}: {reason}" for name, reason in self.attempted)
            message = f"{message} ({details})"
        super().__init__(message)


__all__ = [
    "TaskStoreError",
    "AuthError",
    "RateLimited",
    "TransientNetworkError",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
    "StorageError",
    "PersistenceError",
]
