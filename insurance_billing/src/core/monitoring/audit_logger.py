import hashlib
import structlog
from typing import Optional, Dict, Any, Callable
from sqlalchemy.ext.asyncio import AsyncSession

from insurance_billing.src.core.database.models.audit_log_db import AuditLogModel

logger = structlog.get_logger(__name__)

class AuditLogger:
    def __init__(self, db_session_factory: Callable[[], AsyncSession]):
        """
        Args:
            db_session_factory: callable returning a new AsyncSession. Audit rows are written
                                in their own session so they survive a rollback of the
                                request's business transaction.
        """
        self.db_session_factory = db_session_factory
        logger.info("AuditLogger initialized.")

    def _hash_identifier(self, identifier: str) -> str:
        if not identifier:
            return ""
        return hashlib.sha256(identifier.encode('utf-8')).hexdigest()

    async def log_access(
        self,
        user_id: Optional[str],
        action: str,
        location_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        patient_id: Optional[str] = None, # Raw id, hashed before storage
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        audit_entry = AuditLogModel(
            location_id=location_id,
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            patient_id_hash=self._hash_identifier(patient_id) if patient_id else None,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason if not success else None,
            details=details
        )

        try:
            async with self.db_session_factory() as session:
                async with session.begin():
                    session.add(audit_entry)
            logger.debug("Audit log entry stored.", action=action, resource=resource, resource_id=resource_id)
        except Exception as e:
            # Audit storage failures are logged, never surfaced to the caller.
            logger.error("Failed to store audit log entry.",
                         action=action, resource=resource, user_id=user_id,
                         error=str(e), exc_info=True)
