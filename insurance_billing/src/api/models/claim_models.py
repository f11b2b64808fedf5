from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, condecimal, constr, model_validator


class ClaimStatus(str, Enum):
    DRAFT = "draft"
    SCRUBBED = "scrubbed"
    SUBMITTED = "submitted"
    RECEIVED = "received"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DENIED = "denied"
    PAID = "paid"


class InsuranceType(str, Enum):
    MEDICARE = "medicare"
    MEDICAID = "medicaid"
    TRICARE = "tricare"
    CHAMPVA = "champva"
    GROUP = "group"
    FECA = "feca"
    OTHER = "other"


class RelationshipToInsured(str, Enum):
    SELF = "self"
    SPOUSE = "spouse"
    CHILD = "child"
    OTHER = "other"


class Sex(str, Enum):
    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"


class TaxIdType(str, Enum):
    EIN = "EIN"
    SSN = "SSN"


Money = condecimal(max_digits=12, decimal_places=2, ge=Decimal(0))


class Address(BaseModel):
    street: Optional[constr(strip_whitespace=True, max_length=255)] = None
    city: Optional[constr(strip_whitespace=True, max_length=100)] = None
    state: Optional[constr(strip_whitespace=True, max_length=2)] = None
    zip_code: Optional[constr(strip_whitespace=True, max_length=10)] = None


class PersonInfo(BaseModel):
    """Demographic block used for both the patient (boxes 2, 3, 5) and the insured (4, 7, 11a)."""
    last_name: Optional[constr(strip_whitespace=True, max_length=100)] = None
    first_name: Optional[constr(strip_whitespace=True, max_length=100)] = None
    middle_initial: Optional[constr(strip_whitespace=True, max_length=5)] = None
    date_of_birth: Optional[date] = None
    sex: Optional[Sex] = None
    address: Address = Field(default_factory=Address)
    phone: Optional[constr(strip_whitespace=True, max_length=20)] = None


class BillingProvider(BaseModel):
    name: Optional[constr(strip_whitespace=True, max_length=200)] = None
    address: Address = Field(default_factory=Address)
    phone: Optional[constr(strip_whitespace=True, max_length=20)] = None
    npi: Optional[constr(strip_whitespace=True, max_length=10)] = None
    tax_id: Optional[constr(strip_whitespace=True, max_length=20)] = None
    tax_id_type: TaxIdType = TaxIdType.EIN


class ServiceFacility(BaseModel):
    name: Optional[constr(strip_whitespace=True, max_length=200)] = None
    address: Address = Field(default_factory=Address)
    npi: Optional[constr(strip_whitespace=True, max_length=10)] = None


class ClaimLineItemData(BaseModel):
    service_date: date = Field(..., description="Date of service (box 24A from).")
    service_date_to: Optional[date] = Field(None, description="End of a range-billed service (box 24A to).")
    place_of_service: Optional[constr(strip_whitespace=True, max_length=2)] = None
    procedure_code: Optional[constr(strip_whitespace=True, max_length=20)] = Field(None, description="CPT/HCPCS code.")
    modifiers: List[constr(strip_whitespace=True, max_length=2)] = Field(default_factory=list, max_length=4)
    charge_amount: Money = Field(Decimal("0.00"), description="Line charge, must be non-negative.")
    units: int = Field(1, gt=0)
    diagnosis_pointer: int = Field(1, ge=1, le=4, description="Position (1-4) of the claim diagnosis this line refers to.")
    rendering_provider_npi: Optional[constr(strip_whitespace=True, max_length=10)] = None

    @model_validator(mode="after")
    def check_date_range(self):
        if self.service_date_to is not None and self.service_date_to < self.service_date:
            raise ValueError("service_date_to cannot be before service_date")
        return self


class ClaimFields(BaseModel):
    """Mutable claim content shared by create requests and stored claims."""
    patient_id: Optional[constr(strip_whitespace=True, max_length=100)] = None
    appointment_id: Optional[constr(strip_whitespace=True, max_length=100)] = None

    patient: PersonInfo = Field(default_factory=PersonInfo)
    insured: PersonInfo = Field(default_factory=PersonInfo)
    relationship_to_insured: Optional[RelationshipToInsured] = None

    insurance_type: Optional[InsuranceType] = None
    insured_member_id: Optional[constr(strip_whitespace=True, max_length=100)] = None
    policy_group_number: Optional[constr(strip_whitespace=True, max_length=100)] = None
    insurance_plan_name: Optional[constr(strip_whitespace=True, max_length=200)] = None
    payer_id: Optional[constr(strip_whitespace=True, max_length=64)] = None

    diagnosis_codes: List[constr(strip_whitespace=True, min_length=1, max_length=20)] = Field(default_factory=list, max_length=4)
    line_items: List[ClaimLineItemData] = Field(default_factory=list)

    billing_provider: BillingProvider = Field(default_factory=BillingProvider)
    service_facility: ServiceFacility = Field(default_factory=ServiceFacility)
    rendering_provider_npi: Optional[constr(strip_whitespace=True, max_length=10)] = None

    prior_authorization_number: Optional[constr(strip_whitespace=True, max_length=100)] = None
    patient_account_number: Optional[constr(strip_whitespace=True, max_length=100)] = None
    accept_assignment: bool = True
    signature_on_file: bool = True
    notes: Optional[str] = None


class ClaimCreate(ClaimFields):
    total_amount: Optional[Money] = Field(None, description="Defaults to the sum of line item charges.")
    paid_amount: Money = Decimal("0.00")

    @model_validator(mode="after")
    def check_paid_not_above_total(self):
        if self.total_amount is not None and self.paid_amount > self.total_amount:
            raise ValueError("paid_amount cannot exceed total_amount")
        return self


class ClaimUpdate(BaseModel):
    """
    Partial update. Identity fields (claim_id, claim_number, location_id, created_at) are
    not accepted at all; `status` is accepted only so the store can reject it explicitly.
    """
    model_config = ConfigDict(extra="forbid")

    patient_id: Optional[str] = None
    appointment_id: Optional[str] = None
    patient: Optional[PersonInfo] = None
    insured: Optional[PersonInfo] = None
    relationship_to_insured: Optional[RelationshipToInsured] = None
    insurance_type: Optional[InsuranceType] = None
    insured_member_id: Optional[constr(strip_whitespace=True, max_length=100)] = None
    policy_group_number: Optional[str] = None
    insurance_plan_name: Optional[str] = None
    payer_id: Optional[str] = None
    diagnosis_codes: Optional[List[constr(strip_whitespace=True, min_length=1, max_length=20)]] = Field(None, max_length=4)
    line_items: Optional[List[ClaimLineItemData]] = None
    billing_provider: Optional[BillingProvider] = None
    service_facility: Optional[ServiceFacility] = None
    rendering_provider_npi: Optional[str] = None
    prior_authorization_number: Optional[str] = None
    patient_account_number: Optional[str] = None
    accept_assignment: Optional[bool] = None
    signature_on_file: Optional[bool] = None
    notes: Optional[str] = None
    total_amount: Optional[Money] = None
    paid_amount: Optional[Money] = None

    status: Optional[ClaimStatus] = None
    expected_version: Optional[int] = Field(None, description="Reject the update if the stored version differs.")


class Claim(ClaimFields):
    claim_id: str
    claim_number: str
    location_id: str

    total_amount: Decimal
    paid_amount: Decimal

    status: ClaimStatus
    clearinghouse_reference_number: Optional[str] = None
    submitted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int

    @computed_field
    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.paid_amount


class ClaimStatusHistoryEntry(BaseModel):
    claim_id: str
    from_status: Optional[ClaimStatus] = None
    to_status: ClaimStatus
    changed_at: datetime
    note: Optional[str] = None
    user_id: Optional[str] = None

    model_config = {"from_attributes": True}


class ClaimTransitionRequest(BaseModel):
    to_status: ClaimStatus
    note: Optional[str] = None
    clearinghouse_reference_number: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    expected_version: Optional[int] = None


class BillingSettingsData(BaseModel):
    default_procedure_code: Optional[constr(strip_whitespace=True, max_length=20)] = None
    default_session_fee: Optional[Money] = None
    default_place_of_service: Optional[constr(strip_whitespace=True, max_length=2)] = None
    default_modifier: Optional[constr(strip_whitespace=True, max_length=2)] = None
    billing_provider: BillingProvider = Field(default_factory=BillingProvider)


class BillingSettings(BillingSettingsData):
    location_id: str
    updated_at: Optional[datetime] = None
