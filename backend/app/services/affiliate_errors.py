"""
Affiliate Engine Domain Exceptions

All exceptions raised by the affiliate services. Each carries a stable error
code and HTTP status so API layers can report it without further mapping.
"""

from typing import Optional, Dict, Any

from app.utils.errors import AppError, ErrorCodes


class AffiliateError(AppError):
    """Base exception for affiliate engine errors"""

    default_code = ErrorCodes.INTERNAL_ERROR
    default_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code=self.default_code,
            status_code=self.default_status,
            details=details,
        )


class ValidationError(AffiliateError):
    """Raised when input is rejected before any state changes"""
    default_code = ErrorCodes.VALIDATION_ERROR
    default_status = 400


class InvalidReferralCodeError(ValidationError):
    """Raised when a referral code does not belong to an approved affiliate"""
    default_code = ErrorCodes.INVALID_REFERRAL_CODE


class ConflictError(AffiliateError):
    """Raised when a write collides with an existing row"""
    default_code = ErrorCodes.CONFLICT
    default_status = 409


class InvalidStateError(ConflictError):
    """Raised when a record is not in the status a transition requires"""
    default_code = ErrorCodes.INVALID_STATE


class NotFoundError(AffiliateError):
    """Raised when an affiliate, referral, commission or payout id is unknown"""
    default_code = ErrorCodes.NOT_FOUND
    default_status = 404


class GatewayError(AffiliateError):
    """Raised when the payment gateway declines, fails or times out"""
    default_code = ErrorCodes.GATEWAY_ERROR
    default_status = 502
    retryable = True


class PersistenceError(AffiliateError):
    """Raised when the store is unavailable or rejects a write"""
    default_code = ErrorCodes.DATABASE_ERROR
    default_status = 503
