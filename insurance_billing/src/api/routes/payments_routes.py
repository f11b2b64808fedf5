from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import TenantContext, get_audit_logger, get_payment_allocator, get_tenant_context
from ..models.payment_models import AllocationReport, InsurancePaymentCreate
from ...core.database.db_session import get_db_session
from ...core.exceptions import BillingError
from ...core.monitoring.audit_logger import AuditLogger
from ...processing.payments.payment_allocator import InsurancePaymentAllocator

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/", response_model=AllocationReport, status_code=201)
async def allocate_insurance_payment(
    request: Request,
    payment: InsurancePaymentCreate,
    tenant: TenantContext = Depends(get_tenant_context),
    allocator: InsurancePaymentAllocator = Depends(get_payment_allocator),
    db: AsyncSession = Depends(get_db_session),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    """
    Stores the payment and records each allocated amount on its invoice.
    A 201 is returned even when some invoices failed to sync; check `fully_synced`
    and the per-line `sync_status`, then use retry-sync for the failed lines.
    """
    client_ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    action_details = {
        "payer_id": payment.payer_id,
        "total_amount": str(payment.total_amount),
        "invoice_refs": [a.invoice_ref for a in payment.allocations],
    }
    logger.info("Received insurance payment", location_id=tenant.location_id, **action_details)

    try:
        report = await allocator.allocate_payment(tenant.location_id, payment, user_id=tenant.user_id)
    except BillingError as e:
        await audit_logger.log_access(
            user_id=tenant.user_id, action="ALLOCATE_PAYMENT_FAILED", location_id=tenant.location_id,
            resource="InsurancePayment", resource_id=payment.payment_id, patient_id=payment.client_id,
            ip_address=client_ip, user_agent=user_agent, success=False,
            failure_reason=e.message, details=action_details,
        )
        raise
    except Exception as e:
        logger.error("Error allocating insurance payment (unexpected)", location_id=tenant.location_id,
                     error=str(e), exc_info=True)
        try:
            if db.is_active:
                await db.rollback()
        except Exception as rb_exc:
            logger.error("Error during rollback attempt", error=str(rb_exc), exc_info=True)
        await audit_logger.log_access(
            user_id=tenant.user_id, action="ALLOCATE_PAYMENT_ERROR", location_id=tenant.location_id,
            resource="InsurancePayment", resource_id=payment.payment_id, patient_id=payment.client_id,
            ip_address=client_ip, user_agent=user_agent, success=False,
            failure_reason=f"Unexpected error: {e}", details=action_details,
        )
        raise HTTPException(status_code=500, detail="Failed to allocate payment due to an unexpected error.")

    await audit_logger.log_access(
        user_id=tenant.user_id,
        action="ALLOCATE_PAYMENT_SUCCESS" if report.fully_synced else "ALLOCATE_PAYMENT_PARTIAL_SYNC",
        location_id=tenant.location_id, resource="InsurancePayment", resource_id=report.payment_id,
        patient_id=payment.client_id, ip_address=client_ip, user_agent=user_agent, success=True,
        details={**action_details, "failed_lines": report.failed_line_count},
    )
    return report


@router.get("/", response_model=List[AllocationReport])
async def list_insurance_payments(
    client_id: Optional[str] = Query(None, alias="clientId"),
    tenant: TenantContext = Depends(get_tenant_context),
    allocator: InsurancePaymentAllocator = Depends(get_payment_allocator),
):
    return await allocator.list_payments(tenant.location_id, client_id=client_id)


@router.get("/{payment_id}", response_model=AllocationReport)
async def get_insurance_payment(
    payment_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    allocator: InsurancePaymentAllocator = Depends(get_payment_allocator),
):
    return await allocator.get_payment(tenant.location_id, payment_id)


@router.post("/{payment_id}/retry-sync", response_model=AllocationReport)
async def retry_insurance_payment_sync(
    request: Request,
    payment_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    allocator: InsurancePaymentAllocator = Depends(get_payment_allocator),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    report = await allocator.retry_failed_sync(tenant.location_id, payment_id)
    await audit_logger.log_access(
        user_id=tenant.user_id, action="RETRY_PAYMENT_SYNC", location_id=tenant.location_id,
        resource="InsurancePayment", resource_id=payment_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"), success=True,
        details={"failed_lines": report.failed_line_count},
    )
    return report
