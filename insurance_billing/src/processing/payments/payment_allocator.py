import uuid
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ...api.models.payment_models import (
    AllocationLineResult,
    AllocationRefType,
    AllocationReport,
    InsurancePaymentCreate,
    SyncStatus,
)
from ...core.config.settings import get_settings
from ...core.database.models.claims_db import ClaimModel, utcnow
from ...core.database.models.payments_db import InsurancePaymentModel, PaymentAllocationModel
from ...core.exceptions import BillingError, ConflictError, ExternalSyncError, NotFoundError, ValidationError
from ...core.monitoring.app_metrics import MetricsCollector
from ...integrations.invoicing_client import InvoicingClient
from ..claims.claim_store import ClaimRecordStore
from .payer_registry import PayerRegistry

logger = structlog.get_logger(__name__)

PAYMENT_NOTE_TEMPLATE = "Insurance payment from {payer_name} - Check #{payment_number} - Date: {payment_date}"
ZERO = Decimal("0.00")
PAID_INVOICE_STATUS = "paid"


def make_idempotency_key(payment_id: str, invoice_ref: str) -> str:
    return f"{payment_id}:{invoice_ref}"


@dataclass
class _PlannedLine:
    line_number: int
    invoice_ref: str
    ref_type: AllocationRefType
    claim_id: Optional[str]
    billed_amount: Decimal
    insurance_paid: Decimal
    write_off: Decimal
    client_owes: Decimal = field(init=False)

    def __post_init__(self):
        self.client_owes = self.billed_amount - self.insurance_paid - self.write_off

    @property
    def needs_sync(self) -> bool:
        return self.ref_type == AllocationRefType.INVOICE and self.insurance_paid > 0


class InsurancePaymentAllocator:
    """
    Splits one payer payment across invoices, stores it, then records the paid
    amount on each invoice in the external invoicing system. Only invoices with
    an outstanding balance can be paid. Appointments that were never invoiced
    are billed at the location default session fee and kept local.

    Everything that can reject the request happens before the first write. The
    local payment is the source of truth: invoice sync failures are stored per
    line and reported, never raised.
    """

    def __init__(self, db_session: AsyncSession, invoicing_client: InvoicingClient,
                 metrics_collector: MetricsCollector, payer_registry: Optional[PayerRegistry] = None,
                 claim_store: Optional[ClaimRecordStore] = None):
        self.db = db_session
        self.invoicing_client = invoicing_client
        self.metrics_collector = metrics_collector
        self.payer_registry = payer_registry or PayerRegistry(db_session)
        self.claim_store = claim_store

    async def allocate_payment(self, location_id: str, payment: InsurancePaymentCreate,
                               user_id: Optional[str] = None) -> AllocationReport:
        if payment.payment_id:
            existing = await self._find_payment_model(location_id, payment.payment_id)
            if existing is not None:
                self._ensure_same_inputs(existing, payment)
                logger.info("Payment already recorded, re-syncing outstanding lines",
                            payment_id=payment.payment_id, location_id=location_id)
                self.metrics_collector.record_payment_allocation("replayed")
                return await self._sync_lines(location_id, existing)

        try:
            payer_name, planned_lines = await self._validate_and_plan(location_id, payment)
        except BillingError as e:
            self.metrics_collector.record_payment_allocation("rejected")
            logger.warn("Payment allocation rejected", location_id=location_id, payer_id=payment.payer_id,
                        client_id=payment.client_id, error=e.message)
            raise

        payment_model = await self._persist(location_id, payment, planned_lines, user_id)
        logger.info("Insurance payment stored", payment_id=payment_model.payment_id, location_id=location_id,
                    total_amount=str(payment_model.total_amount), lines=len(planned_lines))

        report = await self._sync_lines(location_id, payment_model, payer_name=payer_name)
        self.metrics_collector.record_payment_allocation(
            "synced" if report.fully_synced else "partial_failure",
            allocated_amount=float(report.allocated_amount),
        )
        return report

    async def retry_failed_sync(self, location_id: str, payment_id: str) -> AllocationReport:
        payment_model = await self._get_payment_model(location_id, payment_id)
        return await self._sync_lines(location_id, payment_model)

    async def get_payment(self, location_id: str, payment_id: str) -> AllocationReport:
        return self._build_report(await self._get_payment_model(location_id, payment_id))

    async def list_payments(self, location_id: str, client_id: Optional[str] = None) -> List[AllocationReport]:
        stmt = select(InsurancePaymentModel).where(InsurancePaymentModel.location_id == location_id)
        if client_id is not None:
            stmt = stmt.where(InsurancePaymentModel.client_id == client_id)
        stmt = stmt.order_by(InsurancePaymentModel.created_at.desc(), InsurancePaymentModel.id.desc())
        with self.metrics_collector.time_db_query("list_payments"):
            rows = (await self.db.execute(stmt)).scalars().all()
        return [self._build_report(row) for row in rows]

    # --- Validation (no writes) ---

    async def _validate_and_plan(self, location_id: str, payment: InsurancePaymentCreate):
        if payment.total_amount <= 0:
            raise ValidationError("Payment total amount must be greater than zero.")

        duplicates = [ref for ref, count in Counter(a.invoice_ref for a in payment.allocations).items() if count > 1]
        if duplicates:
            raise ValidationError(f"Invoice(s) allocated more than once in one payment: {', '.join(sorted(duplicates))}.")

        payer = await self.payer_registry.get_payer(location_id, payment.payer_id)

        planned_lines: List[_PlannedLine] = []
        settled: List[str] = []
        errors: List[str] = []
        session_fee: Optional[Decimal] = None
        for line_number, allocation in enumerate(payment.allocations, start=1):
            if allocation.ref_type == AllocationRefType.APPOINTMENT:
                if session_fee is None:
                    session_fee = await self._default_session_fee(location_id)
                billed_amount = session_fee
            else:
                invoice = await self.invoicing_client.get_invoice(location_id, allocation.invoice_ref)
                outstanding = invoice.total - invoice.amount_paid
                if (invoice.status or "").lower() == PAID_INVOICE_STATUS or outstanding <= 0:
                    settled.append(
                        f"Line {line_number} ({allocation.invoice_ref}): Invoice has no outstanding balance "
                        f"(total {invoice.total}, paid {invoice.amount_paid}, status {invoice.status or 'unknown'})."
                    )
                    continue
                billed_amount = invoice.total

            if allocation.insurance_paid > billed_amount:
                errors.append(
                    f"Line {line_number} ({allocation.invoice_ref}): Insurance paid ({allocation.insurance_paid}) "
                    f"cannot exceed billed amount ({billed_amount})."
                )
                continue
            line = _PlannedLine(
                line_number=line_number,
                invoice_ref=allocation.invoice_ref,
                ref_type=allocation.ref_type,
                claim_id=allocation.claim_id,
                billed_amount=billed_amount,
                insurance_paid=allocation.insurance_paid,
                write_off=allocation.write_off,
            )
            if line.client_owes < 0:
                logger.warn("Allocation leaves a negative client balance", invoice_ref=line.invoice_ref,
                            billed_amount=str(line.billed_amount), client_owes=str(line.client_owes))
            planned_lines.append(line)
        if settled:
            raise ValidationError("Insurance can only be applied to outstanding invoices.", errors=settled + errors)
        if errors:
            raise ValidationError("Insurance paid cannot exceed billed amount.", errors=errors)

        allocated = sum((line.insurance_paid for line in planned_lines), ZERO)
        if payment.total_amount - allocated < 0:
            raise ValidationError(
                f"Allocated insurance payments ({allocated}) exceed the payment total ({payment.total_amount})."
            )

        await self._check_linked_claims(location_id, planned_lines)
        return payer.name, planned_lines

    async def _default_session_fee(self, location_id: str) -> Decimal:
        if self.claim_store is not None:
            fee = (await self.claim_store.get_billing_settings(location_id)).default_session_fee
        else:
            fee = get_settings().DEFAULT_SESSION_FEE
        if fee is None:
            raise ValidationError(
                "Appointment allocations need a default session fee; none is configured for this location."
            )
        return fee

    async def _check_linked_claims(self, location_id: str, planned_lines: List[_PlannedLine]) -> None:
        for claim_id, increment in self._claim_increments(planned_lines).items():
            claim_model = await self._get_claim_model(location_id, claim_id)
            if claim_model.paid_amount + increment > claim_model.total_amount:
                raise ValidationError(
                    f"Applying {increment} to claim {claim_model.claim_number} would exceed its total amount "
                    f"({claim_model.total_amount}); already paid {claim_model.paid_amount}."
                )

    @staticmethod
    def _claim_increments(planned_lines: List[_PlannedLine]) -> Dict[str, Decimal]:
        increments: Dict[str, Decimal] = {}
        for line in planned_lines:
            if line.claim_id and line.insurance_paid > 0:
                increments[line.claim_id] = increments.get(line.claim_id, ZERO) + line.insurance_paid
        return increments

    def _ensure_same_inputs(self, existing: InsurancePaymentModel, payment: InsurancePaymentCreate) -> None:
        stored = (
            existing.payment_date, existing.payer_id, existing.payment_method, existing.payment_number,
            existing.total_amount, existing.client_id,
            [(a.invoice_ref, a.ref_type, a.insurance_paid, a.write_off, a.claim_id) for a in existing.allocations],
        )
        requested = (
            payment.payment_date, payment.payer_id, payment.payment_method.value, payment.payment_number,
            payment.total_amount, payment.client_id,
            [(a.invoice_ref, a.ref_type.value, a.insurance_paid, a.write_off, a.claim_id) for a in payment.allocations],
        )
        if stored != requested:
            raise ConflictError(f"Payment '{existing.payment_id}' already exists with different details.")

    # --- Persistence ---

    async def _persist(self, location_id: str, payment: InsurancePaymentCreate,
                       planned_lines: List[_PlannedLine], user_id: Optional[str]) -> InsurancePaymentModel:
        payment_id = payment.payment_id or uuid.uuid4().hex
        payment_model = InsurancePaymentModel(
            payment_id=payment_id,
            location_id=location_id,
            payment_date=payment.payment_date,
            payer_id=payment.payer_id,
            payment_method=payment.payment_method.value,
            payment_number=payment.payment_number,
            total_amount=payment.total_amount,
            client_id=payment.client_id,
            created_by=user_id,
            allocations=[
                PaymentAllocationModel(
                    line_number=line.line_number,
                    invoice_ref=line.invoice_ref,
                    ref_type=line.ref_type.value,
                    claim_id=line.claim_id,
                    billed_amount=line.billed_amount,
                    insurance_paid=line.insurance_paid,
                    write_off=line.write_off,
                    client_owes=line.client_owes,
                    idempotency_key=make_idempotency_key(payment_id, line.invoice_ref),
                    sync_status=(SyncStatus.PENDING if line.needs_sync else SyncStatus.SKIPPED).value,
                )
                for line in planned_lines
            ],
        )
        self.db.add(payment_model)

        now = utcnow()
        for claim_id, increment in self._claim_increments(planned_lines).items():
            claim_model = await self._get_claim_model(location_id, claim_id)
            claim_model.paid_amount = claim_model.paid_amount + increment
            claim_model.updated_at = now

        try:
            await self.db.commit()
        except (IntegrityError, StaleDataError) as e:
            await self.db.rollback()
            logger.warn("Payment could not be stored due to a concurrent change", payment_id=payment_id,
                        location_id=location_id, error=str(e))
            raise ConflictError(f"Payment '{payment_id}' conflicts with a concurrent change; retry the request.")
        for line in planned_lines:
            if not line.needs_sync:
                self.metrics_collector.record_allocation_line_sync("skipped")
        return payment_model

    # --- External sync ---

    async def _sync_lines(self, location_id: str, payment_model: InsurancePaymentModel,
                          payer_name: Optional[str] = None) -> AllocationReport:
        if payer_name is None:
            payer_name = await self._payer_name(location_id, payment_model.payer_id)
        notes = PAYMENT_NOTE_TEMPLATE.format(
            payer_name=payer_name,
            payment_number=payment_model.payment_number or "N/A",
            payment_date=payment_model.payment_date.isoformat(),
        )

        for allocation in payment_model.allocations:
            if allocation.sync_status in (SyncStatus.SYNCED.value, SyncStatus.SKIPPED.value):
                continue
            try:
                await self.invoicing_client.record_payment(
                    location_id, allocation.invoice_ref, allocation.insurance_paid, notes,
                    idempotency_key=allocation.idempotency_key,
                )
            except ExternalSyncError as e:
                allocation.sync_status = SyncStatus.FAILED.value
                allocation.sync_error = e.message
                logger.warn("Invoice payment sync failed", payment_id=payment_model.payment_id,
                            invoice_ref=allocation.invoice_ref, error=e.message)
                self.metrics_collector.record_allocation_line_sync("failed")
            else:
                allocation.sync_status = SyncStatus.SYNCED.value
                allocation.sync_error = None
                allocation.synced_at = utcnow()
                self.metrics_collector.record_allocation_line_sync("synced")
            # Stored per line so an interrupted run keeps the outcomes already known.
            await self.db.commit()

        return self._build_report(payment_model)

    async def _payer_name(self, location_id: str, payer_id: str) -> str:
        try:
            return (await self.payer_registry.get_payer(location_id, payer_id)).name
        except NotFoundError:
            return payer_id

    # --- Lookups / reporting ---

    async def _find_payment_model(self, location_id: str, payment_id: str) -> Optional[InsurancePaymentModel]:
        stmt = select(InsurancePaymentModel).where(
            InsurancePaymentModel.location_id == location_id,
            InsurancePaymentModel.payment_id == payment_id,
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def _get_payment_model(self, location_id: str, payment_id: str) -> InsurancePaymentModel:
        payment_model = await self._find_payment_model(location_id, payment_id)
        if payment_model is None:
            raise NotFoundError("Insurance payment", payment_id)
        return payment_model

    async def _get_claim_model(self, location_id: str, claim_id: str) -> ClaimModel:
        stmt = select(ClaimModel).where(ClaimModel.location_id == location_id, ClaimModel.claim_id == claim_id)
        claim_model = (await self.db.execute(stmt)).scalars().first()
        if claim_model is None:
            raise NotFoundError("Claim", claim_id)
        return claim_model

    @staticmethod
    def _build_report(payment_model: InsurancePaymentModel) -> AllocationReport:
        lines = []
        report_warnings = []
        for allocation in payment_model.allocations:
            warnings = []
            if allocation.client_owes < 0:
                warnings.append(
                    f"Client owes is negative ({allocation.client_owes}) for invoice {allocation.invoice_ref}: "
                    f"insurance paid plus write-off exceed the billed amount."
                )
            if allocation.ref_type == AllocationRefType.APPOINTMENT.value and allocation.insurance_paid > 0:
                warnings.append(
                    f"Appointment {allocation.invoice_ref} has no invoice; the payment was recorded locally only."
                )
            report_warnings.extend(warnings)
            lines.append(AllocationLineResult(
                line_number=allocation.line_number,
                invoice_ref=allocation.invoice_ref,
                ref_type=allocation.ref_type,
                claim_id=allocation.claim_id,
                billed_amount=allocation.billed_amount,
                insurance_paid=allocation.insurance_paid,
                write_off=allocation.write_off,
                client_owes=allocation.client_owes,
                sync_status=allocation.sync_status,
                sync_error=allocation.sync_error,
                synced_at=allocation.synced_at,
                warnings=warnings,
            ))

        allocated = sum((line.insurance_paid for line in lines), ZERO)
        return AllocationReport(
            payment_id=payment_model.payment_id,
            location_id=payment_model.location_id,
            payment_date=payment_model.payment_date,
            payer_id=payment_model.payer_id,
            payment_method=payment_model.payment_method,
            payment_number=payment_model.payment_number,
            client_id=payment_model.client_id,
            total_amount=payment_model.total_amount,
            allocated_amount=allocated,
            unallocated_amount=payment_model.total_amount - allocated,
            created_by=payment_model.created_by,
            created_at=payment_model.created_at,
            lines=lines,
            warnings=report_warnings,
        )
