from sqlalchemy import Column, Integer, String, Date, Numeric, Text, ForeignKey, TIMESTAMP, UniqueConstraint
from sqlalchemy.orm import relationship
from ..db_session import Base
from .claims_db import utcnow


class PayerModel(Base):
    __tablename__ = "payers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    payer_id = Column(String(64), nullable=False, index=True)
    location_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    address = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('location_id', 'payer_id', name='uq_payers_location_payer'),
    )

    def __repr__(self):
        return f"<PayerModel(payer_id='{self.payer_id}', name='{self.name}')>"


class InsurancePaymentModel(Base):
    __tablename__ = "insurance_payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    payment_id = Column(String(64), nullable=False, index=True)
    location_id = Column(String(100), nullable=False, index=True)

    payment_date = Column(Date, nullable=False)
    payer_id = Column(String(64), nullable=False, index=True)
    payment_method = Column(String(20), nullable=False)
    payment_number = Column(String(100), nullable=True) # e.g. check number
    total_amount = Column(Numeric(12, 2), nullable=False)
    client_id = Column(String(100), nullable=False, index=True)
    created_by = Column(String(100), nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), default=utcnow, nullable=False, index=True)

    allocations = relationship(
        "PaymentAllocationModel",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAllocationModel.line_number",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint('location_id', 'payment_id', name='uq_payments_location_payment'),
    )


class PaymentAllocationModel(Base):
    __tablename__ = "payment_allocations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    payment_db_id = Column(Integer, ForeignKey("insurance_payments.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)

    invoice_ref = Column(String(100), nullable=False, index=True)
    ref_type = Column(String(20), nullable=False, default="invoice") # invoice, appointment
    claim_id = Column(String(64), nullable=True, index=True)

    billed_amount = Column(Numeric(12, 2), nullable=False)
    insurance_paid = Column(Numeric(12, 2), nullable=False, default=0)
    write_off = Column(Numeric(12, 2), nullable=False, default=0)
    client_owes = Column(Numeric(12, 2), nullable=False)

    idempotency_key = Column(String(200), nullable=False, index=True)
    sync_status = Column(String(20), nullable=False, default="pending", index=True) # pending, synced, failed, skipped
    sync_error = Column(Text, nullable=True)
    synced_at = Column(TIMESTAMP(timezone=True), nullable=True)

    payment = relationship("InsurancePaymentModel", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint('payment_db_id', 'invoice_ref', name='uq_allocation_payment_invoice'),
    )
