from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class EngineError(HTTPException):
    """Base error for rejected registry and rule-store requests."""

    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: Any, *, status_code: int | None = None) -> None:
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)


class InvalidArgumentError(EngineError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(EngineError):
    status_code_default = status.HTTP_409_CONFLICT


class NotFoundError(EngineError):
    status_code_default = status.HTTP_404_NOT_FOUND


class ForbiddenError(EngineError):
    status_code_default = status.HTTP_403_FORBIDDEN


class FieldValidationError(EngineError):
    """Raised when a definition-level value (e.g. a default) fails its own field rules."""

    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class StorageFailureError(Exception):
    """Raised by entity stores when a read or write cannot be completed."""


class StorageTimeoutError(StorageFailureError):
    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"entity store {operation} timed out after {timeout_seconds:g}s")
