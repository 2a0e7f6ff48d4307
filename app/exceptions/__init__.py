"""Custom exceptions for the POS sale pipeline."""
from app.utils.formatters import fmt_qty


class SaasError(Exception):
    """Base exception for all application errors."""
    retryable = False

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

class BusinessLogicError(SaasError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)

class NotFoundError(SaasError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class InsufficientStockError(BusinessLogicError):
    """Raised when a deduction would take an ingredient below zero."""
    def __init__(self, item_name, required, available):
        message = f"Insufficient stock for {item_name}: need {fmt_qty(required)}, have {fmt_qty(available)}"
        super().__init__(message, status_code=409)
        self.required = required
        self.available = available

class DeductionValidationError(BusinessLogicError):
    """Bad input for a deduction (quantity, recipe yield). Not retried unchanged."""

class ConcurrencyConflictError(SaasError):
    """Optimistic lock lost: the row changed between read and write."""
    retryable = True

    def __init__(self, message, payload=None):
        super().__init__(message, 409, payload)

class LedgerWriteError(SaasError):
    """Stock was updated but the movement append failed; stock was rolled back."""
    retryable = True

class ReconciliationRequiredError(SaasError):
    """
    CRITICAL: stock was updated, the movement append failed AND the
    compensating rollback failed. Retrying could double-deduct.
    """
    def __init__(self, message, payload=None):
        super().__init__(f"CRITICAL: {message}", 500, payload)

class SaleProcessingError(SaasError):
    """Sale-level failure raised inside the processor and turned into a queue failure."""
    retryable = True

class CapabilityDisabledError(BusinessLogicError):
    """The POS connection has not been cleared for this sync feature."""
    def __init__(self, feature, integration_id=None):
        super().__init__(f"Feature '{feature}' is disabled for integration {integration_id}", status_code=403)
        self.feature = feature

class UnauthorizedError(SaasError):
    """Raised when a machine caller presents a missing or wrong key."""
    def __init__(self, message="Unauthorized"):
        super().__init__(message, 401)
