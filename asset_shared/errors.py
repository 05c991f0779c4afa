"""
Error taxonomy for the asset pipeline.
Every failure that crosses a stage boundary is a ClassifiedError; classify() turns anything else into one.
"""
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import pydantic
import redis
from pydantic import BaseModel

from .schemas import utc_now_iso

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    GENERATION = "generation"
    STORAGE = "storage"
    AUTH = "auth"
    UNKNOWN = "unknown"


class ClassifiedError(Exception):
    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        is_retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.is_retryable = is_retryable
        self.context = dict(context or {})
        self.cause = cause
        self.timestamp = utc_now_iso()
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "category": self.kind.value,
            "is_retryable": self.is_retryable,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r}, retryable={self.is_retryable})"


class NetworkError(ClassifiedError):
    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        # No status means transport failure; 5xx and 429 are transient
        retryable = status_code is None or status_code >= 500 or status_code == 429
        ctx = dict(context or {})
        if status_code is not None:
            ctx["status_code"] = status_code
        if endpoint:
            ctx["endpoint"] = endpoint
        super().__init__(message, "NETWORK_ERROR", retryable, ctx, cause)
        self.status_code = status_code
        self.endpoint = endpoint


class ValidationError(ClassifiedError):
    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, List[str]]] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if field:
            ctx["field"] = field
        if details:
            ctx["details"] = details
        super().__init__(message, "VALIDATION_ERROR", False, ctx, cause)
        self.field = field
        self.details = details


class GenerationError(ClassifiedError):
    kind = ErrorKind.GENERATION

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        job_id: Optional[str] = None,
        code: str = "GENERATION_ERROR",
        is_retryable: bool = True,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if stage:
            ctx["stage"] = stage
        if job_id:
            ctx["job_id"] = job_id
        super().__init__(message, code, is_retryable, ctx, cause)
        self.stage = stage
        self.job_id = job_id


class StorageError(ClassifiedError):
    kind = ErrorKind.STORAGE

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,  # read | write | delete | list
        storage_type: Optional[str] = None,  # local | redis
        is_retryable: bool = True,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        ctx = dict(context or {})
        if operation:
            ctx["operation"] = operation
        if storage_type:
            ctx["storage_type"] = storage_type
        super().__init__(message, "STORAGE_ERROR", is_retryable, ctx, cause)
        self.operation = operation
        self.storage_type = storage_type


class AuthError(ClassifiedError):
    kind = ErrorKind.AUTH

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, "AUTH_ERROR", False, context, cause)


# Substring heuristics for untyped exceptions, checked in order
_MESSAGE_HINTS = [
    (ErrorKind.NETWORK, ("network", "fetch", "timeout", "timed out", "connection")),
    (ErrorKind.VALIDATION, ("invalid", "required", "must be")),
    (ErrorKind.GENERATION, ("generat", "meshy", "provider")),
    (ErrorKind.STORAGE, ("storage", "file", "database")),
    (ErrorKind.AUTH, ("unauthorized", "forbidden", "auth")),
]


def _kind_from_message(message: str) -> ErrorKind:
    text = message.lower()
    for kind, hints in _MESSAGE_HINTS:
        if any(h in text for h in hints):
            return kind
    return ErrorKind.UNKNOWN


def _from_message(message: str, cause: BaseException) -> ClassifiedError:
    kind = _kind_from_message(message)
    if kind == ErrorKind.NETWORK:
        return NetworkError(message, cause=cause)
    if kind == ErrorKind.VALIDATION:
        return ValidationError(message, cause=cause)
    if kind == ErrorKind.GENERATION:
        return GenerationError(message, cause=cause)
    if kind == ErrorKind.STORAGE:
        return StorageError(message, cause=cause)
    if kind == ErrorKind.AUTH:
        return AuthError(message, cause=cause)
    return ClassifiedError(message, cause=cause)


def _safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return ""


def _classify_typed(error: BaseException) -> Optional[ClassifiedError]:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        endpoint = str(error.request.url)
        message = f"HTTP {status} from {endpoint}"
        if status in (401, 403):
            return AuthError(message, context={"status_code": status, "endpoint": endpoint}, cause=error)
        return NetworkError(message, status_code=status, endpoint=endpoint, cause=error)
    if isinstance(error, httpx.TransportError):
        endpoint = None
        try:
            endpoint = str(error.request.url)
        except RuntimeError:
            pass  # request not attached
        return NetworkError(_safe_str(error) or type(error).__name__, endpoint=endpoint, cause=error)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return NetworkError(_safe_str(error) or "Operation timed out", cause=error)
    if isinstance(error, pydantic.ValidationError):
        details: Dict[str, List[str]] = {}
        for item in error.errors():
            loc = ".".join(str(p) for p in item.get("loc", ())) or "__root__"
            details.setdefault(loc, []).append(item.get("msg", "invalid"))
        field = next(iter(details), None)
        return ValidationError("Invalid input", field=field, details=details, cause=error)
    if isinstance(error, redis.RedisError):
        return StorageError(_safe_str(error) or "Redis error", storage_type="redis", cause=error)
    if isinstance(error, OSError):
        return StorageError(_safe_str(error) or type(error).__name__, storage_type="local", cause=error)
    return None


def classify(error: Any) -> ClassifiedError:
    """Normalize any raised value. Total: never raises."""
    try:
        if isinstance(error, ClassifiedError):
            return error
        if isinstance(error, BaseException):
            typed = _classify_typed(error)
            if typed is not None:
                return typed
            message = _safe_str(error) or type(error).__name__
            return _from_message(message, error)
        message = error if isinstance(error, str) and error else "An unknown error occurred"
        return ClassifiedError(message)
    except Exception:
        logger.exception("classify failed; reporting unknown error")
        return ClassifiedError("An unknown error occurred")


USER_MESSAGES = {
    ErrorKind.NETWORK: "Unable to connect to the server. Please check your internet connection.",
    ErrorKind.VALIDATION: "The provided data is invalid. Please check your input.",
    ErrorKind.GENERATION: "Asset generation failed. Please try again or adjust your settings.",
    ErrorKind.STORAGE: "Unable to save or load data. Please try again.",
    ErrorKind.AUTH: "You are not authorized to perform this action.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


class FormattedError(BaseModel):
    message: str
    code: str
    category: ErrorKind
    is_retryable: bool
    user_message: str
    context: Dict[str, Any] = {}


def format_error(error: Any) -> FormattedError:
    err = classify(error)
    return FormattedError(
        message=err.message,
        code=err.code,
        category=err.kind,
        is_retryable=err.is_retryable,
        user_message=USER_MESSAGES[err.kind],
        context={k: v for k, v in err.context.items() if isinstance(v, (str, int, float, bool))},
    )


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.NETWORK: 502,
    ErrorKind.GENERATION: 502,
    ErrorKind.STORAGE: 500,
    ErrorKind.UNKNOWN: 500,
}


def http_status_for(error: Any) -> int:
    return _HTTP_STATUS[classify(error).kind]


class ErrorHistoryEntry(BaseModel):
    error: FormattedError
    timestamp: str
    source: Optional[str] = None


class ErrorHistory:
    """Bounded in-memory record of recent errors for operators. Oldest entries are evicted first."""

    def __init__(self, max_entries: int = 50):
        self.max_entries = max_entries
        self._entries = deque(maxlen=max_entries)

    def record(self, error: Any, source: Optional[str] = None) -> ErrorHistoryEntry:
        entry = ErrorHistoryEntry(error=format_error(error), timestamp=utc_now_iso(), source=source)
        self._entries.appendleft(entry)
        logger.debug(
            "Error recorded code=%s category=%s source=%s: %s",
            entry.error.code, entry.error.category.value, source, entry.error.message,
        )
        return entry

    def entries(self) -> List[ErrorHistoryEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
