"""
exceptions.py — Error Hierarchy of the POS Payment Service

Every failure the orchestrators raise derives from PosError, so the API layer
maps all of them through a single exception handler. Each class fixes its
machine-readable error code and its HTTP status.
"""

from typing import Any, Dict, Optional


class PosError(Exception):
    """
    Base exception for all POS payment errors.

    Attributes:
        error_code (str): Stable machine-readable code.
        message (str): Human-readable message, returned as `error`.
        details (dict | str | None): Optional extra information for the caller.
        status_code (int): HTTP status used by the API layer.
    """

    error_code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# --- Validation (raised before any external call) ---

class InvalidAmountError(PosError):
    """Malformed decimal input or amounts that cannot be combined."""
    error_code = "invalid_amount"
    status_code = 400


class EmptyCartError(PosError):
    error_code = "empty_cart"
    status_code = 400

    def __init__(self, message: str = "Cart is empty", details: Optional[Any] = None):
        super().__init__(message, details)


class NegativeOrZeroTotalError(PosError):
    error_code = "invalid_total"
    status_code = 400


class InvalidPointerError(PosError):
    """Payment pointer that does not normalize to an absolute https:// URL."""
    error_code = "invalid_pointer"
    status_code = 400


# --- Lookup / state ---

class NotFoundError(PosError):
    """Unknown order, checkout or product."""
    error_code = "not_found"
    status_code = 404


class InsufficientStockError(PosError):
    error_code = "insufficient_stock"
    status_code = 409


class NoRedirectReceivedError(PosError):
    error_code = "no_redirect"
    status_code = 500

    def __init__(self, message: str = "No interaction redirect received", details: Optional[Any] = None):
        super().__init__(message, details)


class ContinuationConsumedError(PosError):
    """
    The grant continuation was used but no outgoing payment is known.

    The checkout needs manual reconciliation: the payer may or may not have been debited.
    """
    error_code = "continuation_consumed"
    status_code = 409


class FinishAttemptsExhaustedError(PosError):
    error_code = "finish_attempts_exhausted"
    status_code = 409


# --- External collaborators ---

class ProtocolError(PosError):
    """
    Failure reported by (or while talking to) the Open Payments servers.

    The protocol's own status code is passed through to the caller.
    """
    error_code = "protocol_error"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[Any] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message, details)
        self.status = status
        self.operation = operation
        self.status_code = status or 500


class RequestTimeoutError(PosError):
    """
    Outbound call exceeded its timeout.

    The remote resource may or may not have been created.
    """
    error_code = "timeout"
    status_code = 504

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message, details)
        self.operation = operation


class InventoryGatewayError(PosError):
    error_code = "inventory_gateway_error"
    status_code = 502


class StoreWriteError(PosError):
    """The order/checkout store refused a write. Fatal to the request."""
    error_code = "store_write_failed"
    status_code = 500
