# backend/sahayak/core/exceptions.py
"""
Domain-specific exceptions for the bookings backend.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException carrying the structured detail payload."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the caller lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Booking lifecycle


class InvalidTransition(ValidationException):
    """Requested status change is not permitted from the current state."""

    def __init__(self, current: str, target: str, allowed: Optional[list[str]] = None):
        super().__init__(
            message=f"Cannot transition booking from '{current}' to '{target}'",
            code="INVALID_TRANSITION",
            details={"current_status": current, "target_status": target, "allowed": allowed or []},
        )
        self.current = current
        self.target = target


class Forbidden(ForbiddenException):
    """Actor lacks the role or relationship required for the action."""

    def __init__(self, message: str = "Not authorized for this action", **details: Any):
        super().__init__(message=message, code="FORBIDDEN", details=details)


class ConcurrentUpdateConflict(ConflictException):
    """Compare-and-set mismatch while updating a booking or its payment."""

    def __init__(
        self,
        booking_id: str,
        *,
        expected: Optional[Dict[str, Any]] = None,
        observed: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message="Booking was modified concurrently; re-fetch and retry",
            code="CONCURRENT_UPDATE",
            details={
                "booking_id": booking_id,
                "expected": expected or {},
                "observed": observed or {},
            },
        )
        self.booking_id = booking_id
        self.observed = observed or {}


# Payment gateway


class PaymentUnavailable(ServiceException):
    """Payment gateway is not configured."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Payment service is not available"):
        super().__init__(message=message, code="PAYMENT_UNAVAILABLE")


class SignatureInvalid(ValidationException):
    """Payment or webhook signature did not match."""

    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message=message, code="SIGNATURE_INVALID")


class GatewayCommunicationError(ServiceException):
    """Network failure, timeout, or error response from the payment gateway."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str = "Payment gateway is unreachable",
        *,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        error_body: Any = None,
        retryable: bool = True,
    ):
        super().__init__(
            message=message,
            code="GATEWAY_ERROR",
            details={
                "gateway_status": status_code,
                "gateway_error": error_type,
                "retryable": retryable,
            },
        )
        # 502 when the gateway answered with an error, 503 when it did not answer.
        if status_code is not None:
            self.status_code = 502
        self.gateway_status = status_code
        self.error_type = error_type
        self.error_body = error_body
        self.retryable = retryable


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
