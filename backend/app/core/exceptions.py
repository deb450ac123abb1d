"""
Ledger exceptions and their HTTP translation.

Services raise the domain exceptions below. The API layer turns them into
HTTPExceptions through BusinessError, which keeps internal details (SQL
errors, stack traces) in the log and out of the response body.
"""
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for all billing/balance failures."""


class ValidationError(LedgerError):
    """Input rejected before any store call (missing customer, date, bad amount)."""


class StoreError(LedgerError):
    """A ledger or balance store operation failed.

    `retryable` is set for timeouts and lost connections, where repeating
    the same call may succeed.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ConcurrentUpdateError(StoreError):
    """The customer balance changed between read and conditional write."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ConsistencyError(LedgerError):
    """
    The bill write succeeded but the balance write did not.

    Ledger and customer balance now disagree. Carries what is needed to
    reconcile: the bill id, the customer key and the balance that could not
    be written.
    """

    def __init__(self, message: str, bill_id=None, customer_key=None, attempted_balance=None):
        super().__init__(message)
        self.bill_id = bill_id
        self.customer_key = customer_key
        self.attempted_balance = attempted_balance


class BillNotFoundError(LedgerError):
    pass


class DuplicateBillError(LedgerError):
    """A bill with the same idempotency key was saved by another request first."""

    def __init__(self, message: str, existing=None):
        super().__init__(message)
        self.existing = existing


class CustomerNotFoundError(LedgerError):
    pass


class BusinessError:
    """HTTP responses with safe (non-leaky) messages."""

    @staticmethod
    def not_found(resource: str = "Resource", reason: str = "") -> HTTPException:
        """
        404 scoped to the caller's business.

        Same response whether the row doesn't exist or belongs to another
        business, so ids can't be probed across tenants.
        """
        if reason:
            logger.warning(f"Not found: {resource} - {reason}")

        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
        )

    @staticmethod
    def bad_request(detail: str) -> HTTPException:
        """
        400 for input validation errors.

        OK to include specific details here since the caller caused the issue.
        """
        logger.info(f"Bad request: {detail}")
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
        )

    @staticmethod
    def conflict(detail, reason: str = "") -> HTTPException:
        """409 for version conflicts and ledger/balance divergence."""
        logger.warning(f"Conflict: {reason or detail}")
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )

    @staticmethod
    def unavailable(original_error: Exception = None) -> HTTPException:
        """503 for retryable store failures (timeouts, dropped connections)."""
        logger.warning(f"Store unavailable: {original_error}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable. Please retry.",
            headers={"Retry-After": "1"},
        )

    @staticmethod
    def server_error(original_error: Exception = None) -> HTTPException:
        """
        Generic 500 - logs actual error internally, hides from user.
        """
        if original_error:
            logger.error(
                f"Internal server error: {type(original_error).__name__}: {str(original_error)}",
                exc_info=original_error,
            )
        else:
            logger.error("Internal server error occurred", exc_info=True)

        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An internal error occurred. Please try again later.",
        )


def to_http(error: LedgerError) -> HTTPException:
    """Map a domain exception onto the HTTP response the caller sees."""
    if isinstance(error, ValidationError):
        return BusinessError.bad_request(str(error))
    if isinstance(error, BillNotFoundError):
        return BusinessError.not_found("Bill", reason=str(error))
    if isinstance(error, CustomerNotFoundError):
        return BusinessError.not_found("Customer", reason=str(error))
    if isinstance(error, ConsistencyError):
        return BusinessError.conflict(
            {
                "message": "Bill saved but customer balance was not updated. Reconcile the customer.",
                "bill_id": error.bill_id,
                "customer": str(error.customer_key) if error.customer_key is not None else None,
                "attempted_balance": error.attempted_balance,
            },
            reason=str(error),
        )
    if isinstance(error, DuplicateBillError):
        return BusinessError.conflict("Bill already recorded with this idempotency key.", reason=str(error))
    if isinstance(error, ConcurrentUpdateError):
        return BusinessError.conflict("Customer balance changed concurrently. Please retry.", reason=str(error))
    if isinstance(error, StoreError) and error.retryable:
        return BusinessError.unavailable(error)
    return BusinessError.server_error(error)
