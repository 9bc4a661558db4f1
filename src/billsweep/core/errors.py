"""
Billing Errors and Failure Reasons

Failure reasons are a closed set: every failed charge attempt carries exactly
one of them, both in the ledger and in the sweep result.
"""

from enum import Enum


class FailureReason(Enum):
    """Why a charge attempt did not bill."""
    WALLET_MISSING = "wallet_missing"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    WALLET_DEDUCTION_FAILED = "wallet_deduction_failed"
    UNEXPECTED_ERROR = "unexpected_error"


class BillingError(Exception):
    """Base class for billing engine errors."""
    pass


class SchemaUnavailableError(BillingError):
    """
    Raised by the pre-flight check when a catalog table or its checkpoint
    column is missing. A sweep that sees this has not touched any resource.
    """

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Billing schema unavailable, missing: {', '.join(self.missing)}")


class TransientLookupFailure(BillingError):
    """Payment transaction lookup failed. Never fails a charge."""
    pass


class ResourceNotFoundError(BillingError):
    """Raised when a lifecycle hook targets a resource the catalog does not hold."""

    def __init__(self, kind: str, resource_id: str):
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"No {kind} resource with id {resource_id}")


class UnknownResourceKindError(BillingError):
    """Raised when no catalog is registered for a resource kind."""
    pass
