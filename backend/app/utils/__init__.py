"""
Utility modules for the affiliate engine backend.
"""

from .errors import (
    handle_exception,
    error_response,
    AppError,
    ErrorCodes,
)

__all__ = [
    "handle_exception",
    "error_response",
    "AppError",
    "ErrorCodes",
]
