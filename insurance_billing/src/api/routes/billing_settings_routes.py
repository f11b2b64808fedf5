import structlog
from fastapi import APIRouter, Depends, Request

from ..dependencies import TenantContext, get_audit_logger, get_claim_store, get_tenant_context
from ..models.claim_models import BillingSettings, BillingSettingsData
from ...core.monitoring.audit_logger import AuditLogger
from ...processing.claims.claim_store import ClaimRecordStore

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/", response_model=BillingSettings)
async def get_billing_settings(
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
):
    return await store.get_billing_settings(tenant.location_id)


@router.put("/", response_model=BillingSettings)
async def put_billing_settings(
    request: Request,
    data: BillingSettingsData,
    tenant: TenantContext = Depends(get_tenant_context),
    store: ClaimRecordStore = Depends(get_claim_store),
    audit_logger: AuditLogger = Depends(get_audit_logger),
):
    saved = await store.upsert_billing_settings(tenant.location_id, data)
    await audit_logger.log_access(
        user_id=tenant.user_id, action="UPDATE_BILLING_SETTINGS", location_id=tenant.location_id,
        resource="LocationBillingSettings", resource_id=tenant.location_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"), success=True,
    )
    return saved
