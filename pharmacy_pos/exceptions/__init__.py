"""Custom exceptions for the pharmacy POS application."""


class PosError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class ConfigurationError(PosError):
    """Raised when the organizational context (company/location) is missing."""
    def __init__(self, message="Missing company or location", payload=None):
        super().__init__(message, 400, payload)


class ValidationError(PosError):
    """Exception raised for bad user input. No network call is made."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class NotFoundError(PosError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class InventoryAPIError(PosError):
    """Transport-level failure talking to the inventory backend."""
    def __init__(self, message, upstream_status=None):
        super().__init__(message, 502, {'upstream_status': upstream_status})
        self.upstream_status = upstream_status


class ReservationFailed(PosError):
    """Raised when reserve/update exhausted its retry budget."""
    def __init__(self, cause, attempts=1, operation='reserve'):
        message = f"Stock reservation failed ({operation}): {cause}"
        super().__init__(message, 502, {'operation': operation, 'attempts': attempts})
        self.cause = cause
        self.attempts = attempts
        self.operation = operation


class InsufficientStockError(PosError):
    """Raised when the pre-submit stock check finds less stock than requested."""
    def __init__(self, product_id, requested, available, product_name=None):
        label = product_name or product_id
        message = f"Insufficient stock for {label}: requested {requested}, available {available}"
        super().__init__(message, 409, {
            'product_id': product_id,
            'requested': requested,
            'available': available,
        })
        self.product_id = product_id
        self.requested = requested
        self.available = available


class SubmissionError(PosError):
    """Raised when the billing/fulfill call fails. The cart is preserved."""
    def __init__(self, message="Billing failed", cause=None):
        super().__init__(message, 502, {'cause': str(cause) if cause else None})
        self.cause = cause
