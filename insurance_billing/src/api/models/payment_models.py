from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field, condecimal, constr

from .claim_models import Money


class PaymentMethod(str, Enum):
    CHECK = "check"
    EFT = "eft"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped" # nothing to record externally: zero insurance paid, or an appointment with no invoice


class AllocationRefType(str, Enum):
    INVOICE = "invoice"
    APPOINTMENT = "appointment" # no invoice exists yet; billed at the location default session fee


class AllocationLineInput(BaseModel):
    invoice_ref: constr(strip_whitespace=True, min_length=1, max_length=100) = Field(..., description="External invoice/appointment id.")
    ref_type: AllocationRefType = AllocationRefType.INVOICE
    insurance_paid: Money = Decimal("0.00")
    write_off: Money = Decimal("0.00")
    claim_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=64)] = Field(
        None, description="Local claim whose paid_amount should be increased by insurance_paid."
    )


class InsurancePaymentCreate(BaseModel):
    payment_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=64)] = Field(
        None, description="Caller-chosen id. Re-posting the same id retries the sync instead of recording twice."
    )
    payment_date: date
    payer_id: constr(strip_whitespace=True, min_length=1, max_length=64)
    payment_method: PaymentMethod
    payment_number: Optional[constr(strip_whitespace=True, max_length=100)] = None
    total_amount: condecimal(max_digits=12, decimal_places=2, gt=Decimal(0))
    client_id: constr(strip_whitespace=True, min_length=1, max_length=100)
    allocations: List[AllocationLineInput] = Field(..., min_length=1)


class AllocationLineResult(BaseModel):
    line_number: int
    invoice_ref: str
    ref_type: AllocationRefType = AllocationRefType.INVOICE
    claim_id: Optional[str] = None
    billed_amount: Decimal
    insurance_paid: Decimal
    write_off: Decimal
    client_owes: Decimal
    sync_status: SyncStatus
    sync_error: Optional[str] = None
    synced_at: Optional[datetime] = None
    warnings: List[str] = Field(default_factory=list)


class AllocationReport(BaseModel):
    payment_id: str
    location_id: str
    payment_date: date
    payer_id: str
    payment_method: PaymentMethod
    payment_number: Optional[str] = None
    client_id: str
    total_amount: Decimal
    allocated_amount: Decimal
    unallocated_amount: Decimal
    created_by: Optional[str] = None
    created_at: datetime
    lines: List[AllocationLineResult]
    warnings: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def fully_synced(self) -> bool:
        return all(line.sync_status in (SyncStatus.SYNCED, SyncStatus.SKIPPED) for line in self.lines)

    @computed_field
    @property
    def failed_line_count(self) -> int:
        return sum(1 for line in self.lines if line.sync_status == SyncStatus.FAILED)


class InvoiceSummary(BaseModel):
    """Invoice as seen from the external invoicing API, converted to dollars."""
    invoice_id: str
    total: Decimal
    amount_paid: Decimal = Decimal("0.00")
    status: Optional[str] = None


class PayerCreate(BaseModel):
    payer_id: Optional[constr(strip_whitespace=True, min_length=1, max_length=64)] = None
    name: constr(strip_whitespace=True, min_length=1, max_length=200)
    address: Optional[str] = None


class Payer(BaseModel):
    payer_id: str
    location_id: str
    name: str
    address: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
