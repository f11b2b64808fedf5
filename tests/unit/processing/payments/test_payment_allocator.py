from datetime import date
from decimal import Decimal
from unittest.mock import call

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from insurance_billing.src.api.models.claim_models import BillingSettingsData, ClaimStatus
from insurance_billing.src.api.models.payment_models import (
    AllocationRefType,
    InsurancePaymentCreate,
    InvoiceSummary,
    PayerCreate,
    SyncStatus,
)
from insurance_billing.src.core.database.models.payments_db import InsurancePaymentModel
from insurance_billing.src.core.exceptions import ConflictError, ExternalSyncError, NotFoundError, ValidationError
from insurance_billing.src.processing.claims.claim_store import ClaimRecordStore
from insurance_billing.src.processing.payments.payer_registry import PayerRegistry
from insurance_billing.src.processing.payments.payment_allocator import (
    InsurancePaymentAllocator,
    make_idempotency_key,
)

LOCATION_ID = "loc_test_a"
EXPECTED_NOTE = "Insurance payment from Acme Health - Check #CHK-1001 - Date: 2026-10-15"


@pytest.fixture
def invoices():
    """Billed totals (dollars) the mocked invoicing API reports per invoice id."""
    return {"inv_1": Decimal("150.00"), "inv_2": Decimal("150.00")}


@pytest.fixture
def invoicing_client(invoicing_client, invoices):
    async def get_invoice(location_id, invoice_id):
        if invoice_id not in invoices:
            raise NotFoundError("Invoice", invoice_id)
        if isinstance(invoices[invoice_id], InvoiceSummary):
            return invoices[invoice_id]
        return InvoiceSummary(invoice_id=invoice_id, total=invoices[invoice_id])

    invoicing_client.get_invoice.side_effect = get_invoice
    invoicing_client.record_payment.return_value = {}
    return invoicing_client


@pytest.fixture
def payer_registry(db_session) -> PayerRegistry:
    return PayerRegistry(db_session)


@pytest.fixture
def claim_store(db_session, encryption_service) -> ClaimRecordStore:
    return ClaimRecordStore(db_session, encryption_service)


@pytest.fixture
def allocator(db_session, invoicing_client, metrics, payer_registry, claim_store) -> InsurancePaymentAllocator:
    return InsurancePaymentAllocator(db_session, invoicing_client, metrics, payer_registry=payer_registry,
                                     claim_store=claim_store)


@pytest_asyncio.fixture
async def payer(payer_registry: PayerRegistry):
    return await payer_registry.create_payer(LOCATION_ID, PayerCreate(payer_id="payer_acme", name="Acme Health"))


def _payment(**overrides) -> InsurancePaymentCreate:
    data = {
        "payment_id": "pmt_1",
        "payment_date": "2026-10-15",
        "payer_id": "payer_acme",
        "payment_method": "check",
        "payment_number": "CHK-1001",
        "total_amount": "240.00",
        "client_id": "contact_123",
        "allocations": [
            {"invoice_ref": "inv_1", "insurance_paid": "120.00", "write_off": "10.00"},
            {"invoice_ref": "inv_2", "insurance_paid": "120.00"},
        ],
    }
    data.update(overrides)
    return InsurancePaymentCreate.model_validate(data)


async def _payment_count(db_session) -> int:
    return (await db_session.execute(select(func.count()).select_from(InsurancePaymentModel))).scalar_one()


@pytest.mark.asyncio
async def test_allocates_and_syncs_every_line(allocator, invoicing_client, payer, metrics):
    report = await allocator.allocate_payment(LOCATION_ID, _payment(), user_id="biller_1")

    assert report.payment_id == "pmt_1"
    assert report.allocated_amount == Decimal("240.00")
    assert report.unallocated_amount == Decimal("0.00")
    assert report.created_by == "biller_1"
    assert report.fully_synced
    assert [line.client_owes for line in report.lines] == [Decimal("20.00"), Decimal("30.00")]
    assert all(line.sync_status == SyncStatus.SYNCED for line in report.lines)
    assert invoicing_client.record_payment.await_args_list == [
        call(LOCATION_ID, "inv_1", Decimal("120.00"), EXPECTED_NOTE,
             idempotency_key=make_idempotency_key("pmt_1", "inv_1")),
        call(LOCATION_ID, "inv_2", Decimal("120.00"), EXPECTED_NOTE,
             idempotency_key=make_idempotency_key("pmt_1", "inv_2")),
    ]
    metrics.record_payment_allocation.assert_called_once_with("synced", allocated_amount=240.0)


@pytest.mark.asyncio
async def test_paid_above_billed_rejects_before_any_write(allocator, invoicing_client, payer, db_session, metrics):
    payment = _payment(total_amount="200.00", allocations=[{"invoice_ref": "inv_1", "insurance_paid": "200.00"}])

    with pytest.raises(ValidationError) as exc_info:
        await allocator.allocate_payment(LOCATION_ID, payment)

    assert "cannot exceed billed amount" in exc_info.value.errors[0]
    assert await _payment_count(db_session) == 0
    invoicing_client.record_payment.assert_not_awaited()
    metrics.record_payment_allocation.assert_called_once_with("rejected")


@pytest.mark.asyncio
async def test_allocations_above_payment_total_are_rejected(allocator, invoicing_client, payer, db_session):
    payment = _payment(total_amount="100.00", allocations=[{"invoice_ref": "inv_1", "insurance_paid": "120.00"}])

    with pytest.raises(ValidationError):
        await allocator.allocate_payment(LOCATION_ID, payment)

    assert await _payment_count(db_session) == 0
    invoicing_client.record_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_duplicate_invoice_in_one_payment_is_rejected(allocator, invoicing_client, payer):
    payment = _payment(allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "50.00"},
        {"invoice_ref": "inv_1", "insurance_paid": "50.00"},
    ])
    with pytest.raises(ValidationError):
        await allocator.allocate_payment(LOCATION_ID, payment)
    invoicing_client.get_invoice.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_payer_or_invoice_is_not_found(allocator, payer, db_session):
    with pytest.raises(NotFoundError):
        await allocator.allocate_payment(LOCATION_ID, _payment(payer_id="payer_unknown"))
    with pytest.raises(NotFoundError):
        await allocator.allocate_payment(LOCATION_ID, _payment(
            allocations=[{"invoice_ref": "inv_missing", "insurance_paid": "10.00"}]
        ))
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_negative_client_owes_is_stored_with_warning(allocator, payer):
    payment = _payment(total_amount="150.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "150.00", "write_off": "20.00"},
    ])
    report = await allocator.allocate_payment(LOCATION_ID, payment)

    assert report.lines[0].client_owes == Decimal("-20.00")
    assert report.lines[0].warnings
    assert report.warnings == report.lines[0].warnings


@pytest.mark.asyncio
async def test_unallocated_remainder_is_reported(allocator, payer):
    report = await allocator.allocate_payment(LOCATION_ID, _payment(total_amount="300.00"))
    assert report.unallocated_amount == Decimal("60.00")


@pytest.mark.asyncio
async def test_zero_paid_line_is_not_sent(allocator, invoicing_client, payer):
    payment = _payment(total_amount="120.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "120.00"},
        {"invoice_ref": "inv_2", "insurance_paid": "0.00", "write_off": "150.00"},
    ])
    report = await allocator.allocate_payment(LOCATION_ID, payment)

    assert [line.sync_status for line in report.lines] == [SyncStatus.SYNCED, SyncStatus.SKIPPED]
    assert report.fully_synced
    assert invoicing_client.record_payment.await_count == 1


@pytest.mark.asyncio
async def test_sync_failure_is_recorded_per_line(allocator, invoicing_client, payer, metrics):
    invoicing_client.record_payment.side_effect = [
        {},
        ExternalSyncError("Invoicing API timed out after 10.0s.", invoice_ref="inv_2"),
    ]

    report = await allocator.allocate_payment(LOCATION_ID, _payment())

    assert [line.sync_status for line in report.lines] == [SyncStatus.SYNCED, SyncStatus.FAILED]
    assert report.lines[1].sync_error == "Invoicing API timed out after 10.0s."
    assert not report.fully_synced
    assert report.failed_line_count == 1
    metrics.record_payment_allocation.assert_called_once_with("partial_failure", allocated_amount=240.0)

    stored = await allocator.get_payment(LOCATION_ID, "pmt_1")
    assert [line.sync_status for line in stored.lines] == [SyncStatus.SYNCED, SyncStatus.FAILED]


@pytest.mark.asyncio
async def test_replay_after_partial_failure_resends_only_failed_lines(allocator, invoicing_client, payer, db_session):
    invoicing_client.record_payment.side_effect = [{}, ExternalSyncError("boom", invoice_ref="inv_2")]
    await allocator.allocate_payment(LOCATION_ID, _payment())

    invoicing_client.record_payment.reset_mock(side_effect=True)
    invoicing_client.record_payment.return_value = {}
    report = await allocator.allocate_payment(LOCATION_ID, _payment())

    assert report.fully_synced
    invoicing_client.record_payment.assert_awaited_once()
    assert invoicing_client.record_payment.await_args.args[1] == "inv_2"
    assert invoicing_client.record_payment.await_args.kwargs["idempotency_key"] == "pmt_1:inv_2"
    assert await _payment_count(db_session) == 1


@pytest.mark.asyncio
async def test_replay_after_full_sync_sends_nothing(allocator, invoicing_client, payer, metrics):
    first = await allocator.allocate_payment(LOCATION_ID, _payment())
    invoicing_client.record_payment.reset_mock()
    invoicing_client.get_invoice.reset_mock()

    second = await allocator.allocate_payment(LOCATION_ID, _payment())

    assert second.lines == first.lines
    invoicing_client.record_payment.assert_not_awaited()
    invoicing_client.get_invoice.assert_not_awaited()
    metrics.record_payment_allocation.assert_called_with("replayed")


@pytest.mark.asyncio
async def test_replay_with_different_details_conflicts(allocator, payer):
    await allocator.allocate_payment(LOCATION_ID, _payment())
    with pytest.raises(ConflictError):
        await allocator.allocate_payment(LOCATION_ID, _payment(total_amount="250.00"))


@pytest.mark.asyncio
async def test_retry_failed_sync(allocator, invoicing_client, payer):
    invoicing_client.record_payment.side_effect = ExternalSyncError("down", invoice_ref="inv_1")
    report = await allocator.allocate_payment(LOCATION_ID, _payment())
    assert report.failed_line_count == 2

    invoicing_client.record_payment.side_effect = None
    invoicing_client.record_payment.return_value = {}
    retried = await allocator.retry_failed_sync(LOCATION_ID, "pmt_1")

    assert retried.fully_synced
    assert all(line.synced_at is not None for line in retried.lines)


@pytest.mark.asyncio
async def test_linked_claim_paid_amount_increases(allocator, payer, db_session, encryption_service, claim_create):
    store = ClaimRecordStore(db_session, encryption_service)
    claim = await store.create_claim(LOCATION_ID, claim_create())

    payment = _payment(total_amount="120.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "120.00", "claim_id": claim.claim_id},
    ])
    await allocator.allocate_payment(LOCATION_ID, payment)

    updated = await store.get_claim(LOCATION_ID, claim.claim_id)
    assert updated.paid_amount == Decimal("120.00")
    assert updated.status == ClaimStatus.DRAFT


@pytest.mark.asyncio
async def test_linked_claim_cannot_be_overpaid(allocator, payer, db_session, encryption_service, claim_create, invoices):
    invoices["inv_1"] = Decimal("500.00")
    store = ClaimRecordStore(db_session, encryption_service)
    claim = await store.create_claim(LOCATION_ID, claim_create())

    payment = _payment(total_amount="200.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "200.00", "claim_id": claim.claim_id},
    ])
    with pytest.raises(ValidationError):
        await allocator.allocate_payment(LOCATION_ID, payment)

    assert (await store.get_claim(LOCATION_ID, claim.claim_id)).paid_amount == Decimal("0.00")
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_list_payments_by_client(allocator, payer):
    await allocator.allocate_payment(LOCATION_ID, _payment())
    await allocator.allocate_payment(LOCATION_ID, _payment(
        payment_id="pmt_2", client_id="contact_999", total_amount="50.00",
        allocations=[{"invoice_ref": "inv_1", "insurance_paid": "50.00"}],
    ))

    assert [p.payment_id for p in await allocator.list_payments(LOCATION_ID, client_id="contact_999")] == ["pmt_2"]
    assert len(await allocator.list_payments(LOCATION_ID)) == 2
    assert await allocator.list_payments("loc_test_b") == []


@pytest.mark.asyncio
async def test_payment_without_id_gets_one(allocator, payer):
    report = await allocator.allocate_payment(LOCATION_ID, _payment(payment_id=None))
    assert report.payment_id
    assert report.payment_date == date(2026, 10, 15)


@pytest.mark.asyncio
@pytest.mark.parametrize("settled_invoice", [
    InvoiceSummary(invoice_id="inv_2", total=Decimal("150.00"), amount_paid=Decimal("150.00"), status="sent"),
    InvoiceSummary(invoice_id="inv_2", total=Decimal("150.00"), amount_paid=Decimal("0.00"), status="paid"),
])
async def test_settled_invoice_is_rejected(allocator, invoicing_client, invoices, payer, db_session, settled_invoice):
    invoices["inv_2"] = settled_invoice

    with pytest.raises(ValidationError) as exc_info:
        await allocator.allocate_payment(LOCATION_ID, _payment())

    assert exc_info.value.message == "Insurance can only be applied to outstanding invoices."
    assert len(exc_info.value.errors) == 1
    assert "inv_2" in exc_info.value.errors[0]
    assert await _payment_count(db_session) == 0
    invoicing_client.record_payment.assert_not_awaited()


@pytest.mark.asyncio
async def test_partially_paid_invoice_is_accepted(allocator, invoices, payer):
    invoices["inv_2"] = InvoiceSummary(invoice_id="inv_2", total=Decimal("150.00"),
                                       amount_paid=Decimal("30.00"), status="partially_paid")

    report = await allocator.allocate_payment(LOCATION_ID, _payment())

    assert report.fully_synced
    assert report.lines[1].billed_amount == Decimal("150.00")


@pytest.mark.asyncio
async def test_appointment_is_billed_at_location_session_fee(allocator, invoicing_client, payer, claim_store, metrics):
    await claim_store.upsert_billing_settings(LOCATION_ID, BillingSettingsData(default_session_fee=Decimal("140.00")))
    payment = _payment(total_amount="220.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "120.00"},
        {"invoice_ref": "appt_9", "ref_type": "appointment", "insurance_paid": "100.00"},
    ])

    report = await allocator.allocate_payment(LOCATION_ID, payment)

    appointment_line = report.lines[1]
    assert appointment_line.ref_type == AllocationRefType.APPOINTMENT
    assert appointment_line.billed_amount == Decimal("140.00")
    assert appointment_line.client_owes == Decimal("40.00")
    assert appointment_line.sync_status == SyncStatus.SKIPPED
    assert "appt_9" in appointment_line.warnings[0]
    assert report.fully_synced
    assert [c.args[1] for c in invoicing_client.get_invoice.await_args_list] == ["inv_1"]
    assert [c.args[1] for c in invoicing_client.record_payment.await_args_list] == ["inv_1"]
    metrics.record_allocation_line_sync.assert_any_call("skipped")


@pytest.mark.asyncio
async def test_appointment_without_location_settings_uses_default_fee(allocator, payer):
    payment = _payment(total_amount="200.00", allocations=[
        {"invoice_ref": "appt_1", "ref_type": "appointment", "insurance_paid": "200.00"},
    ])

    with pytest.raises(ValidationError) as exc_info:
        await allocator.allocate_payment(LOCATION_ID, payment)

    assert "cannot exceed billed amount (175.00)" in exc_info.value.errors[0]


@pytest.mark.asyncio
async def test_zero_paid_line_records_skipped_metric(allocator, payer, metrics):
    payment = _payment(total_amount="120.00", allocations=[
        {"invoice_ref": "inv_1", "insurance_paid": "120.00"},
        {"invoice_ref": "inv_2", "insurance_paid": "0.00", "write_off": "150.00"},
    ])
    await allocator.allocate_payment(LOCATION_ID, payment)

    outcomes = [c.args[0] for c in metrics.record_allocation_line_sync.call_args_list]
    assert sorted(outcomes) == ["skipped", "synced"]
