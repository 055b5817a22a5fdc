"""Failure taxonomy shared by the entity store, coordinator and workflows."""

from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base exception for every typed failure surfaced by the core."""

    def __init__(self, message: str, code: str = "WORKFLOW_ERROR") -> None:
        super().__init__(message)
        self.code = code


class NotFound(WorkflowError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message, code=code)


class InvariantViolation(WorkflowError):
    """Raised when a write would break a domain invariant."""

    def __init__(self, message: str, code: str = "INVARIANT_VIOLATION") -> None:
        super().__init__(message, code=code)


class ConflictError(WorkflowError):
    """Raised when the store rejects a write made against a stale version."""

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(message, code=code)


class TransientError(WorkflowError):
    """Raised for failures that may succeed when the whole unit is retried."""

    def __init__(self, message: str, code: str = "TRANSIENT") -> None:
        super().__init__(message, code=code)


class StoreError(WorkflowError):
    """Raised when the backing store fails in a way that is not classified."""

    def __init__(self, message: str, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)


class NestedTransactionError(WorkflowError):
    """Raised when a transactional unit is opened inside another one."""

    def __init__(self, message: str, code: str = "NESTED_TRANSACTION") -> None:
        super().__init__(message, code=code)
