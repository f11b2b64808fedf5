"""
Domain errors raised by the claim store, lifecycle manager and payment allocator.

Routes never build HTTP responses for these by hand; the exception handlers
registered in main.py translate them.
"""
from typing import List, Optional


class BillingError(Exception):
    """Base class for all billing-core errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    """A claim, payer, payment or invoice does not exist in the caller's tenant scope."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} '{resource_id}' not found.")
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(BillingError):
    """Input cannot be accepted. Raised before anything is written."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors if errors is not None else [message]


class InvalidTransitionError(BillingError):
    def __init__(self, from_status: Optional[str], to_status: str):
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed.")
        self.from_status = from_status
        self.to_status = to_status


class ConflictError(BillingError):
    """The record changed since the caller read it. Re-fetch and retry."""


class ExternalSyncError(BillingError):
    """A call to the external invoicing system failed for one invoice."""

    def __init__(self, message: str, invoice_ref: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.invoice_ref = invoice_ref
        self.status_code = status_code
