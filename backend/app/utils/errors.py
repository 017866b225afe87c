"""
Centralized error handling utilities for the affiliate engine.

Services raise AppError subclasses; API layers hosting the engine turn them
into HTTPExceptions or structured failure bodies with the helpers below.
"""

import logging
from typing import Optional, Dict, Any
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with structured data."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


# Common error codes
class ErrorCodes:
    """Standard error codes for API responses."""
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REFERRAL_CODE = "INVALID_REFERRAL_CODE"
    CONFLICT = "CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"


def error_response(error: Exception) -> Dict[str, Any]:
    """
    Build the structured failure body returned to affiliates and admins.

    AppErrors keep their own message; anything else is reported generically
    so internals are not exposed.
    """
    if isinstance(error, AppError):
        return {
            "success": False,
            "error": error.code,
            "message": error.message,
            "details": error.details,
        }

    return {
        "success": False,
        "error": ErrorCodes.INTERNAL_ERROR,
        "message": "An unexpected error occurred. Please try again.",
        "details": {},
    }


def handle_exception(
    error: Exception,
    operation: str,
    *,
    affiliate_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    log_level: str = "error"
) -> HTTPException:
    """
    Handle exceptions and return appropriate HTTPException.

    Args:
        error: The caught exception
        operation: Description of what operation failed (e.g., "request_payout")
        affiliate_id: Optional affiliate ID for context
        resource_id: Optional resource ID for context
        log_level: Logging level ("error", "warning", "info")

    Returns:
        HTTPException with appropriate status code and message

    Example:
        try:
            await affiliate_service.request_payout(affiliate_id, amount)
        except Exception as e:
            raise handle_exception(e, "request_payout", affiliate_id=affiliate_id)
    """
    context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if affiliate_id:
        context["affiliate_id"] = affiliate_id
    if resource_id:
        context["resource_id"] = resource_id

    log_message = f"Error in {operation}: {error}"
    if log_level == "warning":
        logger.warning(log_message, extra=context, exc_info=True)
    elif log_level == "info":
        logger.info(log_message, extra=context)
    else:
        logger.error(log_message, extra=context, exc_info=True)

    # If it's already an HTTPException, preserve it
    if isinstance(error, HTTPException):
        return error

    body = error_response(error)
    body.pop("success")

    if isinstance(error, AppError):
        return HTTPException(status_code=error.status_code, detail=body)

    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=body
    )
