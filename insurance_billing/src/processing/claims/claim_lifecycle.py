import uuid
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.claim_models import Claim, ClaimStatus
from ...core.database.models.claims_db import utcnow
from ...core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from ...core.monitoring.app_metrics import MetricsCollector
from ..validation.claim_validator import ClaimValidator
from .claim_store import ClaimRecordStore

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[ClaimStatus, FrozenSet[ClaimStatus]] = {
    ClaimStatus.DRAFT: frozenset({ClaimStatus.SCRUBBED}),
    ClaimStatus.SCRUBBED: frozenset({ClaimStatus.SUBMITTED}),
    ClaimStatus.SUBMITTED: frozenset({ClaimStatus.RECEIVED}),
    ClaimStatus.RECEIVED: frozenset({ClaimStatus.ACCEPTED, ClaimStatus.REJECTED, ClaimStatus.DENIED}),
    ClaimStatus.ACCEPTED: frozenset({ClaimStatus.PAID}),
    ClaimStatus.REJECTED: frozenset({ClaimStatus.DRAFT}),
    ClaimStatus.DENIED: frozenset({ClaimStatus.DRAFT}),
    ClaimStatus.PAID: frozenset(),
}

ADJUDICATION_OUTCOMES = frozenset({ClaimStatus.ACCEPTED, ClaimStatus.REJECTED, ClaimStatus.DENIED})

RESET_TO_DRAFT_NOTE = "Reset to draft for correction"


def is_allowed_transition(from_status: Union[ClaimStatus, str, None], to_status: Union[ClaimStatus, str]) -> bool:
    """True for a claim creation edge (None -> draft) or any edge of ALLOWED_TRANSITIONS."""
    to_status = ClaimStatus(to_status)
    if from_status is None:
        return to_status == ClaimStatus.DRAFT
    return to_status in ALLOWED_TRANSITIONS[ClaimStatus(from_status)]


class ClaimLifecycleManager:
    """
    Moves claims through draft -> scrubbed -> submitted -> received ->
    accepted/rejected/denied -> paid. Each status change and its history row are
    committed in one transaction.
    """

    def __init__(self, db_session: AsyncSession, store: ClaimRecordStore,
                 validator: ClaimValidator, metrics_collector: MetricsCollector):
        self.db = db_session
        self.store = store
        self.validator = validator
        self.metrics_collector = metrics_collector

    async def transition(
        self,
        location_id: str,
        claim_id: str,
        to_status: Union[ClaimStatus, str],
        note: Optional[str] = None,
        clearinghouse_reference_number: Optional[str] = None,
        expected_version: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Claim:
        to_status = ClaimStatus(to_status)
        claim_model = await self.store.get_claim_model(location_id, claim_id)
        from_status = ClaimStatus(claim_model.status)

        if expected_version is not None and claim_model.version != expected_version:
            self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "conflict")
            raise ConflictError(
                f"Claim '{claim_id}' is at version {claim_model.version}, expected {expected_version}."
            )

        if not is_allowed_transition(from_status, to_status):
            logger.warn("Rejected claim transition", claim_id=claim_id, from_status=from_status.value,
                        to_status=to_status.value)
            self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "invalid_transition")
            raise InvalidTransitionError(from_status.value, to_status.value)

        now = utcnow()
        if to_status == ClaimStatus.SCRUBBED:
            missing_fields = self.validator.validate_for_scrub(self.store.to_schema(claim_model))
            if missing_fields:
                self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "validation_failed")
                raise ValidationError("Claim is missing required CMS-1500 fields.", errors=missing_fields)

        elif to_status == ClaimStatus.SUBMITTED:
            claim_model.clearinghouse_reference_number = (
                clearinghouse_reference_number
                or f"{claim_model.claim_number}-{uuid.uuid4().hex[:8].upper()}"
            )
            claim_model.submitted_at = now

        elif to_status == ClaimStatus.PAID:
            paid_amount = claim_model.paid_amount or Decimal("0.00")
            if paid_amount <= 0:
                self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "validation_failed")
                raise ValidationError("Claim cannot be marked paid before a payment has been applied.")
            if paid_amount > claim_model.total_amount:
                self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "validation_failed")
                raise ValidationError(
                    f"Paid amount ({paid_amount}) exceeds total amount ({claim_model.total_amount})."
                )
            claim_model.paid_at = now

        elif to_status == ClaimStatus.DRAFT:
            note = note or RESET_TO_DRAFT_NOTE

        claim_model.status = to_status.value
        claim_model.updated_at = now
        self.store.add_history_entry(claim_model, from_status.value, to_status.value, note=note, user_id=user_id)

        try:
            await self.store.commit_claim(claim_model)
        except ConflictError:
            self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "conflict")
            raise

        self.metrics_collector.record_claim_transition(from_status.value, to_status.value, "success")
        logger.info("Claim transitioned", claim_id=claim_id, location_id=location_id,
                    from_status=from_status.value, to_status=to_status.value, version=claim_model.version)
        return self.store.to_schema(claim_model)

    async def scrub(self, location_id: str, claim_id: str, **kwargs) -> Claim:
        return await self.transition(location_id, claim_id, ClaimStatus.SCRUBBED, **kwargs)

    async def submit(self, location_id: str, claim_id: str,
                     clearinghouse_reference_number: Optional[str] = None, **kwargs) -> Claim:
        return await self.transition(location_id, claim_id, ClaimStatus.SUBMITTED,
                                     clearinghouse_reference_number=clearinghouse_reference_number, **kwargs)

    async def mark_received(self, location_id: str, claim_id: str, **kwargs) -> Claim:
        return await self.transition(location_id, claim_id, ClaimStatus.RECEIVED, **kwargs)

    async def adjudicate(self, location_id: str, claim_id: str, outcome: Union[ClaimStatus, str], **kwargs) -> Claim:
        outcome = ClaimStatus(outcome)
        if outcome not in ADJUDICATION_OUTCOMES:
            raise ValidationError(f"'{outcome.value}' is not an adjudication outcome.")
        return await self.transition(location_id, claim_id, outcome, **kwargs)

    async def mark_paid(self, location_id: str, claim_id: str, **kwargs) -> Claim:
        return await self.transition(location_id, claim_id, ClaimStatus.PAID, **kwargs)

    async def reset_to_draft(self, location_id: str, claim_id: str, note: Optional[str] = None, **kwargs) -> Claim:
        return await self.transition(location_id, claim_id, ClaimStatus.DRAFT, note=note, **kwargs)
