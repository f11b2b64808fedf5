"""Conversions between claim ORM rows and API models. PHI columns are encrypted here."""
from typing import Any, Dict, Optional

from ...api.models.claim_models import (
    Address,
    BillingProvider,
    BillingSettings,
    Claim,
    ClaimLineItemData,
    PersonInfo,
    ServiceFacility,
)
from ...core.database.models.billing_settings_db import LocationBillingSettingsModel
from ...core.database.models.claims_db import ClaimLineItemModel, ClaimModel
from ...core.security.encryption_service import EncryptionService

# Plain (unencrypted) scalar columns that map 1:1 onto Claim fields.
CLAIM_SCALAR_FIELDS = (
    "patient_id",
    "appointment_id",
    "relationship_to_insured",
    "insurance_type",
    "policy_group_number",
    "insurance_plan_name",
    "payer_id",
    "prior_authorization_number",
    "patient_account_number",
    "accept_assignment",
    "signature_on_file",
    "rendering_provider_npi",
    "notes",
)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _address_columns(prefix: str, address: Address) -> Dict[str, Any]:
    return {
        f"{prefix}street": address.street,
        f"{prefix}city": address.city,
        f"{prefix}state": address.state,
        f"{prefix}zip_code": address.zip_code,
    }


def _columns_to_address(prefix: str, row: Any) -> Address:
    return Address(
        street=getattr(row, f"{prefix}street"),
        city=getattr(row, f"{prefix}city"),
        state=getattr(row, f"{prefix}state"),
        zip_code=getattr(row, f"{prefix}zip_code"),
    )


def person_columns(prefix: str, person: PersonInfo, encryption_service: EncryptionService) -> Dict[str, Any]:
    """`prefix` is 'patient' or 'insured'."""
    columns = {
        f"{prefix}_last_name": person.last_name,
        f"{prefix}_first_name": person.first_name,
        f"{prefix}_middle_initial": person.middle_initial,
        f"{prefix}_date_of_birth": encryption_service.encrypt_date(person.date_of_birth),
        f"{prefix}_sex": _enum_value(person.sex),
        f"{prefix}_phone": person.phone,
    }
    columns.update(_address_columns(f"{prefix}_", person.address))
    return columns


def columns_to_person(prefix: str, row: ClaimModel, encryption_service: EncryptionService) -> PersonInfo:
    return PersonInfo(
        last_name=getattr(row, f"{prefix}_last_name"),
        first_name=getattr(row, f"{prefix}_first_name"),
        middle_initial=getattr(row, f"{prefix}_middle_initial"),
        date_of_birth=encryption_service.decrypt_date(getattr(row, f"{prefix}_date_of_birth")),
        sex=getattr(row, f"{prefix}_sex"),
        address=_columns_to_address(f"{prefix}_", row),
        phone=getattr(row, f"{prefix}_phone"),
    )


def billing_provider_columns(provider: BillingProvider) -> Dict[str, Any]:
    columns = {
        "billing_provider_name": provider.name,
        "billing_provider_phone": provider.phone,
        "billing_provider_npi": provider.npi,
        "billing_provider_tax_id": provider.tax_id,
        "billing_provider_tax_id_type": _enum_value(provider.tax_id_type),
    }
    columns.update(_address_columns("billing_provider_", provider.address))
    return columns


def columns_to_billing_provider(row: Any) -> BillingProvider:
    return BillingProvider(
        name=row.billing_provider_name,
        address=_columns_to_address("billing_provider_", row),
        phone=row.billing_provider_phone,
        npi=row.billing_provider_npi,
        tax_id=row.billing_provider_tax_id,
        tax_id_type=row.billing_provider_tax_id_type or "EIN",
    )


def facility_columns(facility: ServiceFacility) -> Dict[str, Any]:
    columns = {"facility_name": facility.name, "facility_npi": facility.npi}
    columns.update(_address_columns("facility_", facility.address))
    return columns


def line_item_columns(line_item: ClaimLineItemData) -> Dict[str, Any]:
    return {
        "service_date": line_item.service_date,
        "service_date_to": line_item.service_date_to,
        "place_of_service": line_item.place_of_service,
        "procedure_code": line_item.procedure_code,
        "modifiers": list(line_item.modifiers),
        "diagnosis_pointer": line_item.diagnosis_pointer,
        "units": line_item.units,
        "charge_amount": line_item.charge_amount,
        "rendering_provider_npi": line_item.rendering_provider_npi,
    }


def line_item_model_to_schema(row: ClaimLineItemModel) -> ClaimLineItemData:
    return ClaimLineItemData(
        service_date=row.service_date,
        service_date_to=row.service_date_to,
        place_of_service=row.place_of_service,
        procedure_code=row.procedure_code,
        modifiers=list(row.modifiers or []),
        charge_amount=row.charge_amount,
        units=row.units,
        diagnosis_pointer=row.diagnosis_pointer,
        rendering_provider_npi=row.rendering_provider_npi,
    )


def claim_model_to_schema(row: ClaimModel, encryption_service: EncryptionService) -> Claim:
    scalars = {field: getattr(row, field) for field in CLAIM_SCALAR_FIELDS}
    return Claim(
        claim_id=row.claim_id,
        claim_number=row.claim_number,
        location_id=row.location_id,
        patient=columns_to_person("patient", row, encryption_service),
        insured=columns_to_person("insured", row, encryption_service),
        insured_member_id=encryption_service.decrypt(row.insured_member_id),
        diagnosis_codes=list(row.diagnosis_codes or []),
        line_items=[line_item_model_to_schema(li) for li in row.line_items],
        billing_provider=columns_to_billing_provider(row),
        service_facility=ServiceFacility(
            name=row.facility_name,
            address=_columns_to_address("facility_", row),
            npi=row.facility_npi,
        ),
        total_amount=row.total_amount,
        paid_amount=row.paid_amount,
        status=row.status,
        clearinghouse_reference_number=row.clearinghouse_reference_number,
        submitted_at=row.submitted_at,
        paid_at=row.paid_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
        **scalars,
    )


def billing_settings_model_to_schema(row: LocationBillingSettingsModel) -> BillingSettings:
    return BillingSettings(
        location_id=row.location_id,
        default_procedure_code=row.default_procedure_code,
        default_session_fee=row.default_session_fee,
        default_place_of_service=row.default_place_of_service,
        default_modifier=row.default_modifier,
        billing_provider=columns_to_billing_provider(row),
        updated_at=row.updated_at,
    )


def scalar_value(value: Optional[Any]) -> Optional[Any]:
    """Enum members are stored by value."""
    return _enum_value(value)
