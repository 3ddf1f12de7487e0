from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNKNOWN_TOOL = "UnknownTool"
    VALIDATION_ERROR = "ValidationError"
    PERMISSION_DENIED = "PermissionDenied"
    HANDLER_EXCEPTION = "HandlerException"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    CANCELLED = "Cancelled"
    JOB_NOT_FOUND = "JobNotFound"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    BACKEND_FATAL = "BackendFatal"
    BUDGET_EXCEEDED = "BudgetExceeded"
    COMPRESSION_FAILURE = "CompressionFailure"
    STORAGE_CORRUPTION = "StorageCorruption"


class AgentLoopError(Exception):
    kind: ErrorKind = ErrorKind.HANDLER_EXCEPTION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackendUnavailableError(AgentLoopError):
    """Model backend call failed. Retried only when ``retryable`` is set."""

    kind = ErrorKind.BACKEND_UNAVAILABLE

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class BackendFatalError(AgentLoopError):
    kind = ErrorKind.BACKEND_FATAL


class BudgetExceededError(AgentLoopError):
    kind = ErrorKind.BUDGET_EXCEEDED


class CompressionFailureError(AgentLoopError):
    kind = ErrorKind.COMPRESSION_FAILURE


class StorageCorruptionError(AgentLoopError):
    kind = ErrorKind.STORAGE_CORRUPTION

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class CapacityExceededError(AgentLoopError):
    kind = ErrorKind.CAPACITY_EXCEEDED


class JobNotFoundError(AgentLoopError):
    kind = ErrorKind.JOB_NOT_FOUND


class OperationCancelled(AgentLoopError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)
