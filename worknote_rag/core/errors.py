"""
Standardized error handling.

This module provides:
- Standardized error response format with error codes
- User-friendly error messages that hide technical details
- Server-side logging of the technical cause
- Custom exception classes for the different error types

Usage:
    from worknote_rag.core.errors import NotFoundError, ErrorCode, wrap_or_reraise

    raise NotFoundError("Work note", work_id)

    except Exception as e:
        wrap_or_reraise(e, context="searching similar notes")

Error Response Format:
    {
        "error": true,
        "code": "ERR_NOTE_NOT_FOUND",
        "message": "The requested work note could not be found.",
        "detail": "Work note with ID 'WORK-123' not found.",
        "request_id": "20260203101500-a1b2c3d4"
    }
"""

import logging
import traceback
from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from worknote_rag.core.logging_config import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """
    Standardized error codes.

    Format: ERR_<CATEGORY>_<SPECIFIC_ERROR>

    Categories:
    - GEN: General errors
    - NOTE: Work note errors
    - RTY: Embedding retry queue errors
    - VAL: Validation errors
    - SVC: Service/External service errors
    - DB: Database errors
    """
    # General errors
    INTERNAL_ERROR = "ERR_GEN_INTERNAL"
    SERVICE_UNAVAILABLE = "ERR_GEN_SERVICE_UNAVAILABLE"
    REQUEST_TIMEOUT = "ERR_GEN_TIMEOUT"

    # Work note errors
    NOTE_NOT_FOUND = "ERR_NOTE_NOT_FOUND"

    # Retry queue errors
    RETRY_ITEM_NOT_FOUND = "ERR_RTY_NOT_FOUND"
    RETRY_INVALID_STATE = "ERR_RTY_INVALID_STATE"

    # Validation errors
    VALIDATION_FAILED = "ERR_VAL_FAILED"

    # Service errors
    SERVICE_OPENAI_ERROR = "ERR_SVC_OPENAI"
    SERVICE_OLLAMA_ERROR = "ERR_SVC_OLLAMA"
    SERVICE_EMBEDDING_ERROR = "ERR_SVC_EMBEDDING"

    # Database errors
    DATABASE_CONNECTION_FAILED = "ERR_DB_CONNECTION"
    DATABASE_QUERY_FAILED = "ERR_DB_QUERY"
    DATABASE_INTEGRITY_ERROR = "ERR_DB_INTEGRITY"


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred. Please try again or contact support if the problem persists.",
    ErrorCode.SERVICE_UNAVAILABLE: "The service is temporarily unavailable. Please try again later.",
    ErrorCode.REQUEST_TIMEOUT: "The request took too long to complete. Please try again.",

    ErrorCode.NOTE_NOT_FOUND: "The requested work note could not be found.",

    ErrorCode.RETRY_ITEM_NOT_FOUND: "The requested embedding retry item could not be found.",
    ErrorCode.RETRY_INVALID_STATE: "The embedding retry item cannot be retried in its current state.",

    ErrorCode.VALIDATION_FAILED: "The provided data is invalid. Please check your input and try again.",

    ErrorCode.SERVICE_OPENAI_ERROR: "Failed to connect to OpenAI. Please check your API key and try again.",
    ErrorCode.SERVICE_OLLAMA_ERROR: "Failed to connect to Ollama. Please ensure Ollama is running.",
    ErrorCode.SERVICE_EMBEDDING_ERROR: "Failed to generate embeddings. Please check your embedding model configuration.",

    ErrorCode.DATABASE_CONNECTION_FAILED: "Unable to connect to the database. Please try again later.",
    ErrorCode.DATABASE_QUERY_FAILED: "A database error occurred. Please try again.",
    ErrorCode.DATABASE_INTEGRITY_ERROR: "A data integrity error occurred. The operation could not be completed.",
}


def error_response(
    code: ErrorCode,
    detail: Optional[str] = None,
    request_id: Optional[str] = None,
    custom_message: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary.

    Args:
        code: The error code from ErrorCode enum
        detail: Optional detailed information (shown to user)
        request_id: Optional request ID for tracking
        custom_message: Optional custom user-friendly message (overrides default)
    """
    return {
        "error": True,
        "code": code.value,
        "message": custom_message or ERROR_MESSAGES.get(code, "An error occurred."),
        "detail": detail,
        "request_id": request_id
    }


class AppError(HTTPException):
    """
    Base application error class that extends HTTPException.

    Carries a standardized error code, a user-friendly message and an
    optional detail. The technical cause is logged server-side only.
    """

    def __init__(
        self,
        error_code: ErrorCode,
        status_code: int = 400,
        detail: Optional[str] = None,
        log_message: Optional[str] = None,
        log_level: int = logging.WARNING,
        headers: Optional[Dict[str, str]] = None,
        custom_message: Optional[str] = None,
    ):
        self.error_code = error_code
        self.user_message = custom_message or ERROR_MESSAGES.get(error_code, "An error occurred.")

        response_detail = error_response(error_code, detail, custom_message=custom_message)

        if log_message:
            logger.log(log_level, f"[{error_code.value}] {log_message}")

        super().__init__(
            status_code=status_code,
            detail=response_detail,
            headers=headers
        )


class NotFoundError(AppError):
    """Error for resource not found (404)."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None
    ):
        if error_code is None:
            error_code = {
                "work note": ErrorCode.NOTE_NOT_FOUND,
                "embedding retry item": ErrorCode.RETRY_ITEM_NOT_FOUND,
            }.get(resource_type.lower(), ErrorCode.NOTE_NOT_FOUND)

        detail = f"{resource_type} with ID '{resource_id}' not found." if resource_id else None

        super().__init__(
            error_code=error_code,
            status_code=404,
            detail=detail,
            log_message=f"{resource_type} not found: {resource_id}"
        )


class InvalidRetryStateError(AppError):
    """
    A retry item was asked to change state from a status that does not allow it (400).

    The response body keeps the operator-facing shape
    ``{success: false, message, status}`` next to the standard error fields.
    """

    def __init__(self, item_id: str, current_status: str, expected_status: str = "dead_letter"):
        self.item_id = item_id
        self.current_status = current_status
        message = f"Retry item {item_id} is not in {expected_status} status (current: {current_status})"

        super().__init__(
            error_code=ErrorCode.RETRY_INVALID_STATE,
            status_code=400,
            detail=message,
            log_message=message,
            custom_message=message,
        )
        self.detail["success"] = False
        self.detail["status"] = current_status


class EmbeddingBackendError(Exception):
    """Raised by embedding clients when the backend answers with an unusable response."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"{backend}: {message}")


def handle_exception(
    exc: Exception,
    context: str = "processing request",
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    request: Optional[Request] = None
) -> AppError:
    """
    Convert an unknown exception to a standardized AppError.

    Logs the full stack trace server-side while returning a
    user-friendly error message.
    """
    request_id = None
    if request:
        request_id = getattr(request.state, "request_id", None)

    logger.error(
        f"Unhandled exception during {context}: {type(exc).__name__}: {str(exc)}",
        extra={"request_id": request_id, "traceback": traceback.format_exc()}
    )

    error_code = default_code
    status_code = 500

    exc_type = type(exc).__name__
    exc_module = type(exc).__module__ or ""
    exc_str = str(exc).lower()

    if isinstance(exc, EmbeddingBackendError):
        error_code = ErrorCode.SERVICE_OLLAMA_ERROR if exc.backend == "ollama" else ErrorCode.SERVICE_EMBEDDING_ERROR
        status_code = 502

    elif "sqlalchemy" in exc_module or "asyncpg" in exc_module or "psycopg2" in exc_module:
        error_code = ErrorCode.DATABASE_QUERY_FAILED
        if "connection" in exc_str or "operational" in exc_type.lower():
            error_code = ErrorCode.DATABASE_CONNECTION_FAILED
        elif "integrity" in exc_type.lower() or "unique" in exc_str or "duplicate" in exc_str:
            error_code = ErrorCode.DATABASE_INTEGRITY_ERROR

    elif exc_module.startswith("openai"):
        error_code = ErrorCode.SERVICE_OPENAI_ERROR
        status_code = 502

    elif exc_module.startswith("httpx") or "11434" in exc_str:
        error_code = ErrorCode.SERVICE_OLLAMA_ERROR
        status_code = 502

    elif isinstance(exc, TimeoutError) or "timed out" in exc_str:
        error_code = ErrorCode.REQUEST_TIMEOUT
        status_code = 504

    elif isinstance(exc, ValueError):
        error_code = ErrorCode.VALIDATION_FAILED
        status_code = 400

    return AppError(
        error_code=error_code,
        status_code=status_code,
        detail=f"Error while {context}. Please try again.",
        log_message=f"Unhandled {exc_type} during {context}: {str(exc)}"
    )


async def app_exception_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    FastAPI exception handler for AppError exceptions.

    Register this handler in the FastAPI app:
        app.add_exception_handler(AppError, app_exception_handler)
    """
    request_id = getattr(request.state, "request_id", None)

    response_body = exc.detail
    if isinstance(response_body, dict):
        response_body = {**response_body, "request_id": request_id}

    return JSONResponse(
        status_code=exc.status_code,
        content=response_body,
        headers=exc.headers
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for all unhandled exceptions."""
    request_id = getattr(request.state, "request_id", None)

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc()
        }
    )

    return JSONResponse(
        status_code=500,
        content=error_response(
            ErrorCode.INTERNAL_ERROR,
            request_id=request_id
        )
    )


def wrap_or_reraise(exc: Exception, context: str = "processing request") -> None:
    """
    Either re-raise an HTTPException as-is, or wrap unknown exceptions.

    Usage:
        except Exception as e:
            wrap_or_reraise(e, context="listing embedding failures")
    """
    if isinstance(exc, HTTPException):
        raise exc
    raise handle_exception(exc, context)
