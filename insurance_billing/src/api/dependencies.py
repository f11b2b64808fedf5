from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from insurance_billing.src.core.monitoring.audit_logger import AuditLogger
from insurance_billing.src.core.database.db_session import AsyncSessionLocal, get_db_session
from insurance_billing.src.core.monitoring.app_metrics import MetricsCollector
from insurance_billing.src.core.security.encryption_service import EncryptionService
from insurance_billing.src.core.config.settings import get_settings
from insurance_billing.src.integrations.invoicing_client import InvoicingClient
from insurance_billing.src.processing.claims.claim_store import ClaimRecordStore
from insurance_billing.src.processing.claims.claim_lifecycle import ClaimLifecycleManager
from insurance_billing.src.processing.cms1500.field_mapper import Cms1500FieldMapper
from insurance_billing.src.processing.payments.payer_registry import PayerRegistry
from insurance_billing.src.processing.payments.payment_allocator import InsurancePaymentAllocator
from insurance_billing.src.processing.validation.claim_validator import ClaimValidator

logger = structlog.get_logger(__name__)

_audit_logger_instance: Optional[AuditLogger] = None
_metrics_collector_instance: Optional[MetricsCollector] = None
_encryption_service_instance: Optional[EncryptionService] = None
_invoicing_client_instance: Optional[InvoicingClient] = None


@dataclass(frozen=True)
class TenantContext:
    location_id: str
    user_id: Optional[str] = None


def get_tenant_context(
    x_location_id: Optional[str] = Header(None),
    location_id_query: Optional[str] = Query(None, alias="locationId"),
    x_user_id: Optional[str] = Header(None),
) -> TenantContext:
    """Tenant comes from the X-Location-Id header or the locationId query parameter. It is trusted, not verified."""
    location_id = x_location_id or location_id_query
    if not location_id:
        raise HTTPException(status_code=400, detail="A location id is required (X-Location-Id header or locationId query parameter).")
    return TenantContext(location_id=location_id, user_id=x_user_id)


def get_async_session_factory() -> Callable[[], AsyncSession]:
    """Returns the raw session factory callable."""
    return AsyncSessionLocal


def get_audit_logger() -> AuditLogger:
    global _audit_logger_instance
    if _audit_logger_instance is None:
        _audit_logger_instance = AuditLogger(db_session_factory=get_async_session_factory())
        logger.info("Default AuditLogger instance created.")
    return _audit_logger_instance


def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector_instance
    if _metrics_collector_instance is None:
        _metrics_collector_instance = MetricsCollector()
        logger.info("Default MetricsCollector instance created.")
    return _metrics_collector_instance


def get_encryption_service() -> EncryptionService:
    global _encryption_service_instance
    if _encryption_service_instance is None:
        app_settings = get_settings()
        if not app_settings.APP_ENCRYPTION_KEY:
            logger.error("APP_ENCRYPTION_KEY is not set. EncryptionService cannot be initialized.")
            raise ValueError("APP_ENCRYPTION_KEY must be set for EncryptionService.")
        _encryption_service_instance = EncryptionService(encryption_key=app_settings.APP_ENCRYPTION_KEY)
        logger.info("Default EncryptionService instance created.")
    return _encryption_service_instance


def get_invoicing_client() -> InvoicingClient:
    global _invoicing_client_instance
    if _invoicing_client_instance is None:
        _invoicing_client_instance = InvoicingClient(settings=get_settings(), metrics_collector=get_metrics_collector())
        logger.info("Default InvoicingClient instance created.")
    return _invoicing_client_instance


async def close_invoicing_client() -> None:
    global _invoicing_client_instance
    if _invoicing_client_instance is not None:
        await _invoicing_client_instance.aclose()
        _invoicing_client_instance = None


def get_claim_store(
    db: AsyncSession = Depends(get_db_session),
    encryption_service: EncryptionService = Depends(get_encryption_service),
    metrics: MetricsCollector = Depends(get_metrics_collector),
) -> ClaimRecordStore:
    return ClaimRecordStore(db, encryption_service, metrics_collector=metrics)


def get_lifecycle_manager(
    db: AsyncSession = Depends(get_db_session),
    store: ClaimRecordStore = Depends(get_claim_store),
    metrics: MetricsCollector = Depends(get_metrics_collector),
) -> ClaimLifecycleManager:
    return ClaimLifecycleManager(db, store, ClaimValidator(), metrics)


def get_field_mapper() -> Cms1500FieldMapper:
    return Cms1500FieldMapper()


def get_payer_registry(db: AsyncSession = Depends(get_db_session)) -> PayerRegistry:
    return PayerRegistry(db)


def get_payment_allocator(
    db: AsyncSession = Depends(get_db_session),
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
    metrics: MetricsCollector = Depends(get_metrics_collector),
    payer_registry: PayerRegistry = Depends(get_payer_registry),
    claim_store: ClaimRecordStore = Depends(get_claim_store),
) -> InsurancePaymentAllocator:
    return InsurancePaymentAllocator(db, invoicing_client, metrics, payer_registry=payer_registry,
                                     claim_store=claim_store)
