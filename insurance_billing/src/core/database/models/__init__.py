# Importing this package registers every model on Base.metadata.
# Alembic's env.py and the test fixtures rely on that.

from .claims_db import ClaimModel, ClaimLineItemModel, ClaimStatusHistoryModel
from .payments_db import PayerModel, InsurancePaymentModel, PaymentAllocationModel
from .billing_settings_db import LocationBillingSettingsModel
from .audit_log_db import AuditLogModel

__all__ = [
    "ClaimModel",
    "ClaimLineItemModel",
    "ClaimStatusHistoryModel",
    "PayerModel",
    "InsurancePaymentModel",
    "PaymentAllocationModel",
    "LocationBillingSettingsModel",
    "AuditLogModel",
]
