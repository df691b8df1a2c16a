"""
Error definitions for devharbor

Every error raised by the engine carries an ErrorCode so the control channel
can turn it into a typed result without inspecting exception classes.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for the orchestration engine"""

    # Runtime errors (1000-1999)
    RUNTIME_UNAVAILABLE = "DH1001"
    RUNTIME_OPERATION_FAILED = "DH1002"
    HEALTH_CHECK_TIMEOUT = "DH1010"

    # State errors (2000-2999)
    NOT_FOUND = "DH2001"
    ALREADY_INSTALLED = "DH2002"
    NOT_INSTALLED = "DH2003"
    OPERATION_IN_PROGRESS = "DH2004"
    OPERATION_CANCELLED = "DH2005"

    # Storage errors (3000-3999)
    STORAGE_CORRUPT = "DH3001"
    NOT_INITIALIZED = "DH3002"

    # Validation and permission errors (4000-4999)
    VALIDATION_ERROR = "DH4001"
    PERMISSION_DENIED = "DH4002"

    INTERNAL_ERROR = "DH9000"


class HarborError(Exception):
    """Base exception carrying an error code and structured context"""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.data = data or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        return {
            "error_code": self.code.value,
            "error_name": self.code.name,
            "message": self.message,
            "data": self.data,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class RuntimeUnavailable(HarborError):
    """Container runtime unreachable or timed out"""
    default_code = ErrorCode.RUNTIME_UNAVAILABLE


class RuntimeOperationFailed(HarborError):
    """Runtime accepted the request but the operation failed"""
    default_code = ErrorCode.RUNTIME_OPERATION_FAILED


class NotFound(HarborError):
    default_code = ErrorCode.NOT_FOUND


class AlreadyInstalled(HarborError):
    default_code = ErrorCode.ALREADY_INSTALLED


class NotInstalled(HarborError):
    default_code = ErrorCode.NOT_INSTALLED


class OperationInProgress(HarborError):
    default_code = ErrorCode.OPERATION_IN_PROGRESS


class OperationCancelled(HarborError):
    default_code = ErrorCode.OPERATION_CANCELLED


class HealthCheckTimeout(HarborError):
    default_code = ErrorCode.HEALTH_CHECK_TIMEOUT


class ValidationError(HarborError):
    default_code = ErrorCode.VALIDATION_ERROR


class PermissionDenied(HarborError):
    default_code = ErrorCode.PERMISSION_DENIED


class StorageCorrupt(HarborError):
    """Raised internally while loading a store; always healed, never surfaced"""
    default_code = ErrorCode.STORAGE_CORRUPT


class NotInitialized(HarborError):
    default_code = ErrorCode.NOT_INITIALIZED
