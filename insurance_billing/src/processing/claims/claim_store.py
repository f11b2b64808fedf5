import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ...api.models.claim_models import (
    BillingSettings,
    BillingSettingsData,
    Claim,
    ClaimCreate,
    ClaimLineItemData,
    ClaimStatus,
    ClaimStatusHistoryEntry,
    ClaimUpdate,
)
from ...core.config.settings import get_settings
from ...core.database.models.billing_settings_db import LocationBillingSettingsModel
from ...core.database.models.claims_db import ClaimLineItemModel, ClaimModel, ClaimStatusHistoryModel, utcnow
from ...core.exceptions import ConflictError, NotFoundError, ValidationError
from ...core.monitoring.app_metrics import MetricsCollector
from ...core.security.encryption_service import EncryptionService
from .claim_converters import (
    CLAIM_SCALAR_FIELDS,
    billing_provider_columns,
    billing_settings_model_to_schema,
    claim_model_to_schema,
    facility_columns,
    line_item_columns,
    person_columns,
    scalar_value,
)

logger = structlog.get_logger(__name__)


class ClaimRecordStore:
    """
    Tenant-scoped persistence for claims, their line items, status history and
    location billing settings. Every query filters on location_id.
    """

    def __init__(self, db_session: AsyncSession, encryption_service: EncryptionService,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.db = db_session
        self.encryption_service = encryption_service
        self.metrics_collector = metrics_collector
        self.settings = get_settings()

    # --- Claims ---

    async def create_claim(self, location_id: str, claim_data: ClaimCreate, user_id: Optional[str] = None) -> Claim:
        billing_settings = await self.get_billing_settings(location_id)
        claim_data = self._apply_billing_defaults(claim_data, billing_settings)

        total_amount = claim_data.total_amount
        if total_amount is None:
            total_amount = sum((li.charge_amount for li in claim_data.line_items), Decimal("0.00"))
        if claim_data.paid_amount > total_amount:
            raise ValidationError(
                f"Paid amount ({claim_data.paid_amount}) cannot exceed total amount ({total_amount})."
            )

        claim_id = uuid.uuid4().hex
        for attempt in range(1, self.settings.CLAIM_NUMBER_MAX_ATTEMPTS + 1):
            claim_number = await self._next_claim_number(location_id)
            claim_model = ClaimModel(
                claim_id=claim_id,
                claim_number=claim_number,
                location_id=location_id,
                status=ClaimStatus.DRAFT.value,
                total_amount=total_amount,
                paid_amount=claim_data.paid_amount,
                diagnosis_codes=list(claim_data.diagnosis_codes),
                insured_member_id=self.encryption_service.encrypt(claim_data.insured_member_id),
                line_items=[
                    ClaimLineItemModel(line_number=i + 1, **line_item_columns(li))
                    for i, li in enumerate(claim_data.line_items)
                ],
                **self._content_columns(claim_data),
            )
            self.db.add(claim_model)
            self.db.add(ClaimStatusHistoryModel(
                claim_id=claim_id,
                location_id=location_id,
                from_status=None,
                to_status=ClaimStatus.DRAFT.value,
                note="Claim created",
                user_id=user_id,
            ))
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                logger.warn("Claim number collision, retrying", location_id=location_id,
                            claim_number=claim_number, attempt=attempt, error=str(e))
                continue

            logger.info("Claim created", claim_id=claim_id, claim_number=claim_number, location_id=location_id)
            if self.metrics_collector:
                self.metrics_collector.record_claim_created()
            return self.to_schema(claim_model)

        raise ConflictError(
            f"Could not assign a unique claim number after {self.settings.CLAIM_NUMBER_MAX_ATTEMPTS} attempts."
        )

    async def get_claim(self, location_id: str, claim_id: str) -> Claim:
        return self.to_schema(await self.get_claim_model(location_id, claim_id))

    async def get_claim_model(self, location_id: str, claim_id: str) -> ClaimModel:
        stmt = select(ClaimModel).where(ClaimModel.location_id == location_id, ClaimModel.claim_id == claim_id)
        claim_model = (await self.db.execute(stmt)).scalars().first()
        if claim_model is None:
            raise NotFoundError("Claim", claim_id)
        return claim_model

    async def list_claims(self, location_id: str, status: Optional[ClaimStatus] = None,
                          patient_id: Optional[str] = None) -> List[Claim]:
        stmt = select(ClaimModel).where(ClaimModel.location_id == location_id)
        if status is not None:
            stmt = stmt.where(ClaimModel.status == scalar_value(status))
        if patient_id is not None:
            stmt = stmt.where(ClaimModel.patient_id == patient_id)
        stmt = stmt.order_by(ClaimModel.created_at.desc(), ClaimModel.id.desc())

        if self.metrics_collector:
            with self.metrics_collector.time_db_query("list_claims"):
                rows = (await self.db.execute(stmt)).scalars().all()
        else:
            rows = (await self.db.execute(stmt)).scalars().all()
        return [self.to_schema(row) for row in rows]

    async def update_claim(self, location_id: str, claim_id: str, patch: ClaimUpdate,
                           expected_version: Optional[int] = None) -> Claim:
        fields_set = set(patch.model_fields_set)
        if "status" in fields_set:
            raise ValidationError("Claim status cannot be changed by an update; use a status transition.")
        null_amounts = [f for f in ("paid_amount", "total_amount") if f in fields_set and getattr(patch, f) is None]
        if null_amounts:
            raise ValidationError(f"{', '.join(null_amounts)} cannot be null.")
        if expected_version is None:
            expected_version = patch.expected_version
        fields_set.discard("expected_version")

        claim_model = await self.get_claim_model(location_id, claim_id)
        if expected_version is not None and claim_model.version != expected_version:
            raise ConflictError(
                f"Claim '{claim_id}' is at version {claim_model.version}, expected {expected_version}."
            )

        # A rejected patch must not survive to a later commit on this session.
        try:
            self._apply_patch(claim_model, patch, fields_set)
            if claim_model.paid_amount > claim_model.total_amount:
                raise ValidationError(
                    f"Paid amount ({claim_model.paid_amount}) cannot exceed total amount ({claim_model.total_amount})."
                )
        except Exception:
            await self.db.rollback()
            raise

        # Always touch the row so the version counter advances.
        claim_model.updated_at = utcnow()
        await self.commit_claim(claim_model)
        logger.info("Claim updated", claim_id=claim_id, location_id=location_id,
                    fields=sorted(fields_set), version=claim_model.version)
        return self.to_schema(claim_model)

    def _apply_patch(self, claim_model: ClaimModel, patch: ClaimUpdate, fields_set: set) -> None:
        if "line_items" in fields_set and patch.line_items is not None:
            self._replace_line_items(claim_model, patch.line_items)
            if "total_amount" not in fields_set:
                claim_model.total_amount = sum((li.charge_amount for li in patch.line_items), Decimal("0.00"))

        for field in fields_set:
            value = getattr(patch, field)
            if field in ("patient", "insured"):
                if value is not None:
                    for column, column_value in person_columns(field, value, self.encryption_service).items():
                        setattr(claim_model, column, column_value)
            elif field == "billing_provider":
                if value is not None:
                    for column, column_value in billing_provider_columns(value).items():
                        setattr(claim_model, column, column_value)
            elif field == "service_facility":
                if value is not None:
                    for column, column_value in facility_columns(value).items():
                        setattr(claim_model, column, column_value)
            elif field == "insured_member_id":
                claim_model.insured_member_id = self.encryption_service.encrypt(value)
            elif field == "diagnosis_codes":
                claim_model.diagnosis_codes = list(value or [])
            elif field in ("total_amount", "paid_amount"):
                setattr(claim_model, field, value)
            elif field in ("accept_assignment", "signature_on_file"):
                if value is not None:
                    setattr(claim_model, field, value)
            elif field in CLAIM_SCALAR_FIELDS:
                setattr(claim_model, field, scalar_value(value))

    async def delete_claim(self, location_id: str, claim_id: str) -> None:
        claim_model = await self.get_claim_model(location_id, claim_id)
        if claim_model.status != ClaimStatus.DRAFT.value:
            raise ValidationError(f"Only draft claims can be deleted; claim is '{claim_model.status}'.")
        await self.db.delete(claim_model)
        await self.commit_claim(claim_model)
        logger.info("Claim deleted", claim_id=claim_id, location_id=location_id)

    async def get_status_history(self, location_id: str, claim_id: str) -> List[ClaimStatusHistoryEntry]:
        stmt = (
            select(ClaimStatusHistoryModel)
            .where(ClaimStatusHistoryModel.location_id == location_id, ClaimStatusHistoryModel.claim_id == claim_id)
            .order_by(ClaimStatusHistoryModel.changed_at.asc(), ClaimStatusHistoryModel.id.asc())
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        if not rows:
            # Distinguish "no such claim" from an empty trail
            await self.get_claim_model(location_id, claim_id)
        return [ClaimStatusHistoryEntry.model_validate(row) for row in rows]

    def add_history_entry(self, claim_model: ClaimModel, from_status: Optional[str], to_status: str,
                          note: Optional[str] = None, user_id: Optional[str] = None) -> ClaimStatusHistoryModel:
        """Stages a history row in the current session; the caller commits it together with the status change."""
        entry = ClaimStatusHistoryModel(
            claim_id=claim_model.claim_id,
            location_id=claim_model.location_id,
            from_status=from_status,
            to_status=to_status,
            note=note,
            user_id=user_id,
        )
        self.db.add(entry)
        return entry

    def to_schema(self, claim_model: ClaimModel) -> Claim:
        return claim_model_to_schema(claim_model, self.encryption_service)

    # --- Billing settings ---

    async def get_billing_settings(self, location_id: str) -> BillingSettings:
        settings_model = await self._get_billing_settings_model(location_id)
        if settings_model is None:
            return BillingSettings(
                location_id=location_id,
                default_procedure_code=self.settings.DEFAULT_PROCEDURE_CODE,
                default_session_fee=self.settings.DEFAULT_SESSION_FEE,
                default_place_of_service=self.settings.DEFAULT_PLACE_OF_SERVICE,
                default_modifier=self.settings.DEFAULT_MODIFIER,
            )
        return billing_settings_model_to_schema(settings_model)

    async def upsert_billing_settings(self, location_id: str, data: BillingSettingsData) -> BillingSettings:
        settings_model = await self._get_billing_settings_model(location_id)
        if settings_model is None:
            settings_model = LocationBillingSettingsModel(location_id=location_id)
            self.db.add(settings_model)

        settings_model.default_procedure_code = data.default_procedure_code
        settings_model.default_session_fee = data.default_session_fee
        settings_model.default_place_of_service = data.default_place_of_service
        settings_model.default_modifier = data.default_modifier
        for column, value in billing_provider_columns(data.billing_provider).items():
            setattr(settings_model, column, value)
        settings_model.updated_at = utcnow()

        await self.db.commit()
        logger.info("Billing settings saved", location_id=location_id)
        return billing_settings_model_to_schema(settings_model)

    # --- Internals ---

    async def _get_billing_settings_model(self, location_id: str) -> Optional[LocationBillingSettingsModel]:
        stmt = select(LocationBillingSettingsModel).where(LocationBillingSettingsModel.location_id == location_id)
        return (await self.db.execute(stmt)).scalars().first()

    async def _next_claim_number(self, location_id: str) -> str:
        day_prefix = f"{self.settings.CLAIM_NUMBER_PREFIX}-{datetime.now(timezone.utc):%Y%m%d}-"
        stmt = select(func.max(ClaimModel.claim_number)).where(
            ClaimModel.location_id == location_id,
            ClaimModel.claim_number.like(f"{day_prefix}%"),
        )
        last_number = (await self.db.execute(stmt)).scalar()
        sequence = int(last_number.rsplit("-", 1)[-1]) + 1 if last_number else 1
        return f"{day_prefix}{sequence:05d}"

    async def commit_claim(self, claim_model: ClaimModel) -> None:
        claim_id = claim_model.claim_id
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.warn("Concurrent modification detected", claim_id=claim_id)
            raise ConflictError(f"Claim '{claim_id}' was modified concurrently; re-fetch and retry.")

    def _content_columns(self, claim_data: ClaimCreate) -> dict:
        columns = {field: scalar_value(getattr(claim_data, field)) for field in CLAIM_SCALAR_FIELDS}
        columns.update(person_columns("patient", claim_data.patient, self.encryption_service))
        columns.update(person_columns("insured", claim_data.insured, self.encryption_service))
        columns.update(billing_provider_columns(claim_data.billing_provider))
        columns.update(facility_columns(claim_data.service_facility))
        return columns

    @staticmethod
    def _replace_line_items(claim_model: ClaimModel, line_items: List[ClaimLineItemData]) -> None:
        # Rows are rewritten in place so (claim, line_number) never collides mid-flush.
        existing = list(claim_model.line_items)
        for i, line_item in enumerate(line_items):
            columns = line_item_columns(line_item)
            if i < len(existing):
                for column, value in columns.items():
                    setattr(existing[i], column, value)
            else:
                claim_model.line_items.append(ClaimLineItemModel(line_number=i + 1, **columns))
        for stale in existing[len(line_items):]:
            claim_model.line_items.remove(stale)

    @staticmethod
    def _apply_billing_defaults(claim_data: ClaimCreate, billing_settings: BillingSettings) -> ClaimCreate:
        """Fills billing provider and line fields the caller did not send from the location's settings."""
        line_items = []
        for line_item in claim_data.line_items:
            sent = line_item.model_fields_set
            updates = {}
            if "procedure_code" not in sent and billing_settings.default_procedure_code:
                updates["procedure_code"] = billing_settings.default_procedure_code
            if "place_of_service" not in sent and billing_settings.default_place_of_service:
                updates["place_of_service"] = billing_settings.default_place_of_service
            if "modifiers" not in sent and billing_settings.default_modifier:
                updates["modifiers"] = [billing_settings.default_modifier]
            if "charge_amount" not in sent and billing_settings.default_session_fee is not None:
                updates["charge_amount"] = billing_settings.default_session_fee
            line_items.append(line_item.model_copy(update=updates) if updates else line_item)

        provider = claim_data.billing_provider
        defaults = billing_settings.billing_provider
        merged_address = provider.address.model_copy(update={
            key: value for key, value in defaults.address.model_dump().items()
            if getattr(provider.address, key) is None and value is not None
        })
        provider_updates = {
            key: getattr(defaults, key)
            for key in ("name", "phone", "npi", "tax_id")
            if getattr(provider, key) is None and getattr(defaults, key) is not None
        }
        if "tax_id_type" not in provider.model_fields_set:
            provider_updates["tax_id_type"] = defaults.tax_id_type
        merged_provider = provider.model_copy(update={**provider_updates, "address": merged_address})

        return claim_data.model_copy(update={"line_items": line_items, "billing_provider": merged_provider})
