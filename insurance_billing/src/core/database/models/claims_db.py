from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Date, Numeric, Boolean, Text, JSON, ForeignKey, TIMESTAMP, UniqueConstraint
from sqlalchemy.orm import relationship
from ..db_session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimModel(Base):
    __tablename__ = "claims"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_id = Column(String(64), unique=True, index=True, nullable=False) # Opaque business key
    claim_number = Column(String(50), nullable=False)
    location_id = Column(String(100), nullable=False, index=True) # Tenant scope

    # CRM references
    patient_id = Column(String(100), nullable=True, index=True)
    appointment_id = Column(String(100), nullable=True, index=True)

    # Box 2, 3, 5: patient
    patient_last_name = Column(String(100), nullable=True)
    patient_first_name = Column(String(100), nullable=True)
    patient_middle_initial = Column(String(5), nullable=True)
    patient_date_of_birth = Column(String(255), nullable=True) # Encrypted
    patient_sex = Column(String(1), nullable=True)
    patient_street = Column(String(255), nullable=True)
    patient_city = Column(String(100), nullable=True)
    patient_state = Column(String(2), nullable=True)
    patient_zip_code = Column(String(10), nullable=True)
    patient_phone = Column(String(20), nullable=True)

    # Box 4, 7, 11a: insured
    insured_last_name = Column(String(100), nullable=True)
    insured_first_name = Column(String(100), nullable=True)
    insured_middle_initial = Column(String(5), nullable=True)
    insured_date_of_birth = Column(String(255), nullable=True) # Encrypted
    insured_sex = Column(String(1), nullable=True)
    insured_street = Column(String(255), nullable=True)
    insured_city = Column(String(100), nullable=True)
    insured_state = Column(String(2), nullable=True)
    insured_zip_code = Column(String(10), nullable=True)
    insured_phone = Column(String(20), nullable=True)
    relationship_to_insured = Column(String(20), nullable=True)

    # Box 1, 1a, 11, 11c: insurance
    insurance_type = Column(String(20), nullable=True)
    insured_member_id = Column(String(255), nullable=True) # Encrypted
    policy_group_number = Column(String(100), nullable=True)
    insurance_plan_name = Column(String(200), nullable=True)
    payer_id = Column(String(64), nullable=True, index=True)

    # Box 21 (ordered, max 4)
    diagnosis_codes = Column(JSON, nullable=False, default=list)

    # Box 23, 26, 27, 12/13
    prior_authorization_number = Column(String(100), nullable=True)
    patient_account_number = Column(String(100), nullable=True)
    accept_assignment = Column(Boolean, nullable=False, default=True)
    signature_on_file = Column(Boolean, nullable=False, default=True)

    # Box 28, 29
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Box 25, 33: billing provider
    billing_provider_name = Column(String(200), nullable=True)
    billing_provider_street = Column(String(255), nullable=True)
    billing_provider_city = Column(String(100), nullable=True)
    billing_provider_state = Column(String(2), nullable=True)
    billing_provider_zip_code = Column(String(10), nullable=True)
    billing_provider_phone = Column(String(20), nullable=True)
    billing_provider_npi = Column(String(10), nullable=True)
    billing_provider_tax_id = Column(String(20), nullable=True)
    billing_provider_tax_id_type = Column(String(3), nullable=True, default="EIN")

    # Box 32: service facility
    facility_name = Column(String(200), nullable=True)
    facility_street = Column(String(255), nullable=True)
    facility_city = Column(String(100), nullable=True)
    facility_state = Column(String(2), nullable=True)
    facility_zip_code = Column(String(10), nullable=True)
    facility_npi = Column(String(10), nullable=True)

    rendering_provider_npi = Column(String(10), nullable=True)
    notes = Column(Text, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default="draft", index=True)
    clearinghouse_reference_number = Column(String(100), nullable=True)
    submitted_at = Column(TIMESTAMP(timezone=True), nullable=True)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    line_items = relationship(
        "ClaimLineItemModel",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimLineItemModel.line_number",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint('location_id', 'claim_number', name='uq_claims_location_claim_number'),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<ClaimModel(id={self.id}, claim_id='{self.claim_id}', claim_number='{self.claim_number}', status='{self.status}')>"


class ClaimLineItemModel(Base):
    __tablename__ = "claim_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_db_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True) # Refers to ClaimModel.id

    line_number = Column(Integer, nullable=False)

    service_date = Column(Date, nullable=False)
    service_date_to = Column(Date, nullable=True)
    place_of_service = Column(String(2), nullable=True)
    procedure_code = Column(String(20), nullable=True)
    modifiers = Column(JSON, nullable=False, default=list)
    diagnosis_pointer = Column(Integer, nullable=False, default=1)
    units = Column(Integer, default=1, nullable=False)
    charge_amount = Column(Numeric(12, 2), nullable=False)
    rendering_provider_npi = Column(String(10), nullable=True)

    claim = relationship("ClaimModel", back_populates="line_items")

    __table_args__ = (
        UniqueConstraint('claim_db_id', 'line_number', name='uq_claimitem_claim_line'),
    )


class ClaimStatusHistoryModel(Base):
    """Append-only. Keyed by the business claim id so the trail survives claim deletion."""
    __tablename__ = "claim_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_id = Column(String(64), nullable=False, index=True)
    location_id = Column(String(100), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    changed_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)
    note = Column(Text, nullable=True)
    user_id = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<ClaimStatusHistoryModel(claim_id='{self.claim_id}', {self.from_status} -> {self.to_status})>"
