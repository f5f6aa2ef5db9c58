"""
shared/exceptions.py
Domain error taxonomy. Every error carries the HTTP status and machine code
used by the handler registered in main.py.
"""

from typing import Optional


class BookingEngineError(Exception):
    status_code: int = 400
    code: str = "booking_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(BookingEngineError):
    """Incomplete or inconsistent booking input. Recoverable by the user."""
    status_code = 422
    code = "validation_error"


class PaymentInitiationError(BookingEngineError):
    """Provider rejected the STK push. Terminal for the attempt."""
    status_code = 502
    code = "payment_initiation_failed"


class PaymentTimeoutError(BookingEngineError):
    status_code = 504
    code = "payment_timeout"


class CapacityExceededError(BookingEngineError):
    status_code = 409
    code = "capacity_exceeded"


class IneligibleRescheduleError(BookingEngineError):
    status_code = 400
    code = "reschedule_ineligible"

    def __init__(self, message: str, *, reason: str):
        super().__init__(message, code=f"reschedule_{reason}")
        self.reason = reason


class IneligibleCancellationError(BookingEngineError):
    status_code = 400
    code = "cancel_ineligible"

    def __init__(self, message: str, *, reason: str):
        super().__init__(message, code=f"cancel_{reason}")
        self.reason = reason


class ItemNotFoundError(BookingEngineError):
    status_code = 404
    code = "item_not_found"


class BookingNotFoundError(BookingEngineError):
    status_code = 404
    code = "booking_not_found"


class ItemUnavailableError(BookingEngineError):
    status_code = 400
    code = "item_unavailable"


class ProviderError(BookingEngineError):
    """Transport or auth failure talking to the payment provider."""
    status_code = 502
    code = "provider_error"


class PaymentNotFoundError(BookingEngineError):
    status_code = 404
    code = "payment_not_found"


class PaymentNotRetryableError(BookingEngineError):
    status_code = 409
    code = "payment_not_retryable"


class NotificationNotFoundError(BookingEngineError):
    status_code = 404
    code = "notification_not_found"
