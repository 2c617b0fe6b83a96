"""Error taxonomy for checkout, payments and the wallet ledger.

Every error carries a ``kind`` so callers can tell a tamper/staleness abort
(refresh client state before retrying) from a business rejection (retrying the
same request will fail the same way) from a transient upstream failure (safe to
resubmit as-is).
"""
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    kind = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, code: str = "error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "detail": self.message,
            "kind": self.kind,
            "code": self.code,
            "retryable": self.retryable,
        }
        body.update(self.details)
        return body


class ValidationFailed(CheckoutError):
    """Malformed or missing input, caught before any mutation."""

    kind = "validation"
    status_code = 422

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None, code: str = "invalid_input"):
        super().__init__(message, code=code, details={"errors": errors or {}})
        self.errors = errors or {}


class TotalsMismatch(CheckoutError):
    """Server-computed values disagree with what the client submitted."""

    kind = "integrity"
    status_code = 422

    def __init__(self, message: str, discrepancies: Dict[str, Any], code: str = "totals_mismatch"):
        super().__init__(
            message,
            code=code,
            details={"discrepancies": discrepancies, "refresh_required": True},
        )
        self.discrepancies = discrepancies


class BusinessRuleViolation(CheckoutError):
    kind = "business_rule"
    status_code = 400


class GatewayUnavailable(CheckoutError):
    """The payment provider could not be reached or refused every attempt."""

    kind = "external_dependency"
    status_code = 502
    retryable = True


class NotFound(CheckoutError):
    kind = "not_found"
    status_code = 404

    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(message, code=code)
