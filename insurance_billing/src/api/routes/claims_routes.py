from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import (
    TenantContext,
    get_audit_logger,
    get_claim_store,
    get_field_mapper,
    get_lifecycle_manager,
    get_tenant_context,
)
from ..models.claim_models import (
    Claim,
    ClaimCreate,
    ClaimStatus,
    ClaimStatusHistoryEntry,
    ClaimTransitionRequest,
    ClaimUpdate,
)
from ..models.cms1500_models import Cms1500View
from ...core.database.db_session import get_db_session
from ...core.exceptions import BillingError
from ...core.monitoring.audit_logger import AuditLogger
from ...processing.claims.claim_lifecycle import ClaimLifecycleManager
from ...processing.claims.claim_store import ClaimRecordStore
from ...processing.cms1500.field_mapper import Cms1500FieldMapper

logger = structlog.get_logger(__name__)
router = APIRouter()


async def _audit(audit_logger: AuditLogger, request: Request, tenant: TenantContext, action: str,
                 resource_id: Optional[str], success: bool = True, failure_reason: Optional[str] = None,
                 patient_id: Optional[str] = None, details: Optional[dict] = None):
    await audit_logger.log_access(
        user_id=tenant.user_id, action=action, location_id=tenant.location_id,
        resource="Claim", resource_id=resource_id, patient_id=patient_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        success=success, failure_reason=failure_reason, details=details,
    )


async def _rollback_quietly(db: AsyncSession):
    try:
        if db.is_active:
            await db.rollback()
    except Exception as rb_exc:
        logger.error("Error during rollback attempt", error=str(rb_exc), exc_info=True)


@router.post("/", response_model=Claim, status_code=201)
async def create_claim(
    request: Request,
    claim_data: ClaimCreate,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
    db: AsyncSession = Depends(get_db_session),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    logger.info("Received request to create claim", location_id=tenant.location_id, patient_id=claim_data.patient_id)
    try:
        claim = await store.create_claim(tenant.location_id, claim_data, user_id=tenant.user_id)
    except BillingError as e:
        await _audit(audit_logger, request, tenant, "CREATE_CLAIM_FAILED", None, success=False,
                     failure_reason=e.message, patient_id=claim_data.patient_id)
        raise
    except Exception as e:
        logger.error("Error saving claim (unexpected)", location_id=tenant.location_id, error=str(e), exc_info=True)
        await _rollback_quietly(db)
        await _audit(audit_logger, request, tenant, "CREATE_CLAIM_ERROR", None, success=False,
                     failure_reason=f"Unexpected error: {e}", patient_id=claim_data.patient_id)
        raise HTTPException(status_code=500, detail="Failed to save claim due to an unexpected error.")

    await _audit(audit_logger, request, tenant, "CREATE_CLAIM_SUCCESS", claim.claim_id,
                 patient_id=claim.patient_id, details={"claim_number": claim.claim_number,
                                                       "total_amount": str(claim.total_amount)})
    return claim


@router.get("/", response_model=List[Claim])
async def list_claims(
    status: Optional[ClaimStatus] = Query(None),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
):
    return await store.list_claims(tenant.location_id, status=status, patient_id=patient_id)


@router.get("/{claim_id}", response_model=Claim)
async def get_claim(
    claim_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
):
    return await store.get_claim(tenant.location_id, claim_id)


@router.patch("/{claim_id}", response_model=Claim)
async def update_claim(
    request: Request,
    claim_id: str,
    patch: ClaimUpdate,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
    db: AsyncSession = Depends(get_db_session),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    changed_fields = sorted(patch.model_fields_set - {"expected_version"})
    try:
        claim = await store.update_claim(tenant.location_id, claim_id, patch)
    except BillingError as e:
        await _audit(audit_logger, request, tenant, "UPDATE_CLAIM_FAILED", claim_id, success=False,
                     failure_reason=e.message, details={"fields": changed_fields})
        raise
    except Exception as e:
        logger.error("Error updating claim (unexpected)", claim_id=claim_id, error=str(e), exc_info=True)
        await _rollback_quietly(db)
        await _audit(audit_logger, request, tenant, "UPDATE_CLAIM_ERROR", claim_id, success=False,
                     failure_reason=f"Unexpected error: {e}")
        raise HTTPException(status_code=500, detail="Failed to update claim due to an unexpected error.")

    await _audit(audit_logger, request, tenant, "UPDATE_CLAIM_SUCCESS", claim_id, patient_id=claim.patient_id,
                 details={"fields": changed_fields, "version": claim.version})
    return claim


@router.delete("/{claim_id}", status_code=204)
async def delete_claim(
    request: Request,
    claim_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    try:
        await store.delete_claim(tenant.location_id, claim_id)
    except BillingError as e:
        await _audit(audit_logger, request, tenant, "DELETE_CLAIM_FAILED", claim_id, success=False,
                     failure_reason=e.message)
        raise
    await _audit(audit_logger, request, tenant, "DELETE_CLAIM_SUCCESS", claim_id)
    return Response(status_code=204)


@router.post("/{claim_id}/transitions", response_model=Claim)
async def transition_claim(
    request: Request,
    claim_id: str,
    transition: ClaimTransitionRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    lifecycle: ClaimLifecycleManager = Depends(get_lifecycle_manager),
    db: AsyncSession = Depends(get_db_session),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    details = {"to_status": transition.to_status.value}
    try:
        claim = await lifecycle.transition(
            tenant.location_id, claim_id, transition.to_status,
            note=transition.note,
            clearinghouse_reference_number=transition.clearinghouse_reference_number,
            expected_version=transition.expected_version,
            user_id=tenant.user_id,
        )
    except BillingError as e:
        await _audit(audit_logger, request, tenant, "TRANSITION_CLAIM_FAILED", claim_id, success=False,
                     failure_reason=e.message, details=details)
        raise
    except Exception as e:
        logger.error("Error transitioning claim (unexpected)", claim_id=claim_id, error=str(e), exc_info=True)
        await _rollback_quietly(db)
        await _audit(audit_logger, request, tenant, "TRANSITION_CLAIM_ERROR", claim_id, success=False,
                     failure_reason=f"Unexpected error: {e}", details=details)
        raise HTTPException(status_code=500, detail="Failed to transition claim due to an unexpected error.")

    await _audit(audit_logger, request, tenant, "TRANSITION_CLAIM_SUCCESS", claim_id, patient_id=claim.patient_id,
                 details={**details, "clearinghouse_reference_number": claim.clearinghouse_reference_number})
    return claim


@router.get("/{claim_id}/history", response_model=List[ClaimStatusHistoryEntry])
async def get_claim_history(
    claim_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
):
    return await store.get_status_history(tenant.location_id, claim_id)


@router.get("/{claim_id}/cms1500", response_model=Cms1500View)
async def get_claim_cms1500(
    claim_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
    mapper: Cms1500FieldMapper = Depends(get_field_mapper),
):
    claim = await store.get_claim(tenant.location_id, claim_id)
    return mapper.map_claim(claim)
