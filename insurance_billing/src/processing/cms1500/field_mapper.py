from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import structlog

from ...api.models.claim_models import Address, Claim, ClaimLineItemData, InsuranceType, PersonInfo, RelationshipToInsured
from ...api.models.cms1500_models import Cms1500ServiceLine, Cms1500View
from ...core.config.settings import get_settings

logger = structlog.get_logger(__name__)

DIAGNOSIS_SLOTS = ("A", "B", "C", "D")
ICD10_INDICATOR = "0"
SIGNATURE_ON_FILE = "SIGNATURE ON FILE"

INSURANCE_TYPE_LABELS = {
    InsuranceType.MEDICARE: "MEDICARE",
    InsuranceType.MEDICAID: "MEDICAID",
    InsuranceType.TRICARE: "TRICARE",
    InsuranceType.CHAMPVA: "CHAMPVA",
    InsuranceType.GROUP: "GROUP HEALTH PLAN",
    InsuranceType.FECA: "FECA BLK LUNG",
    InsuranceType.OTHER: "OTHER",
}

RELATIONSHIP_LABELS = {
    RelationshipToInsured.SELF: "SELF",
    RelationshipToInsured.SPOUSE: "SPOUSE",
    RelationshipToInsured.CHILD: "CHILD",
    RelationshipToInsured.OTHER: "OTHER",
}


def format_date(value: Optional[date]) -> str:
    return value.strftime("%m %d %y") if value else ""


def format_money(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    return str(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_name(person: PersonInfo) -> str:
    parts = [person.last_name, person.first_name, person.middle_initial]
    return ", ".join(p for p in parts if p)


def format_city_state_zip(address: Address) -> str:
    city_state = ", ".join(p for p in (address.city, address.state) if p)
    return " ".join(p for p in (city_state, address.zip_code) if p)


def diagnosis_letter(pointer: int) -> str:
    return DIAGNOSIS_SLOTS[pointer - 1] if 1 <= pointer <= len(DIAGNOSIS_SLOTS) else ""


class Cms1500FieldMapper:
    """Maps a claim onto the print-ready box values of a CMS-1500 (02/12) form. Pure and deterministic."""

    def __init__(self, max_line_items: Optional[int] = None):
        self.max_line_items = max_line_items or get_settings().CMS1500_MAX_LINE_ITEMS

    def map_claim(self, claim: Claim, line_items: Optional[List[ClaimLineItemData]] = None) -> Cms1500View:
        line_items = claim.line_items if line_items is None else line_items
        patient, insured = claim.patient, claim.insured
        provider, facility = claim.billing_provider, claim.service_facility

        rendered_lines = line_items[:self.max_line_items]
        omitted = len(line_items) - len(rendered_lines)
        warnings = []
        if omitted > 0:
            warnings.append(
                f"Claim has {len(line_items)} line items; only the first {self.max_line_items} fit on the form "
                f"and {omitted} were not rendered."
            )
            logger.warn("CMS-1500 line items truncated", claim_id=claim.claim_id,
                        line_count=len(line_items), omitted=omitted)

        diagnoses = list(claim.diagnosis_codes[:len(DIAGNOSIS_SLOTS)])
        diagnoses += [""] * (len(DIAGNOSIS_SLOTS) - len(diagnoses))

        signature = SIGNATURE_ON_FILE if claim.signature_on_file else ""

        return Cms1500View(
            claim_id=claim.claim_id,
            claim_number=claim.claim_number,
            box_1_insurance_type=INSURANCE_TYPE_LABELS.get(claim.insurance_type, "") if claim.insurance_type else "",
            box_1a_insured_id=claim.insured_member_id or "",
            box_2_patient_name=format_name(patient),
            box_3_patient_birth_date=format_date(patient.date_of_birth),
            box_3_patient_sex=self._sex(patient),
            box_4_insured_name=format_name(insured),
            box_5_patient_address=patient.address.street or "",
            box_5_patient_city=patient.address.city or "",
            box_5_patient_state=patient.address.state or "",
            box_5_patient_zip=patient.address.zip_code or "",
            box_5_patient_phone=patient.phone or "",
            box_6_relationship=RELATIONSHIP_LABELS.get(claim.relationship_to_insured, "") if claim.relationship_to_insured else "",
            box_7_insured_address=insured.address.street or "",
            box_7_insured_city=insured.address.city or "",
            box_7_insured_state=insured.address.state or "",
            box_7_insured_zip=insured.address.zip_code or "",
            box_7_insured_phone=insured.phone or "",
            box_11_policy_group=claim.policy_group_number or "",
            box_11a_insured_birth_date=format_date(insured.date_of_birth),
            box_11a_insured_sex=self._sex(insured),
            box_11c_plan_name=claim.insurance_plan_name or "",
            box_12_patient_signature=signature,
            box_13_insured_signature=signature,
            box_21_icd_indicator=ICD10_INDICATOR,
            box_21_diagnoses=diagnoses,
            box_23_prior_authorization=claim.prior_authorization_number or "",
            box_24_lines=[
                self._map_line(slot, line_item, claim.rendering_provider_npi)
                for slot, line_item in enumerate(rendered_lines, start=1)
            ] + [
                Cms1500ServiceLine(slot=slot)
                for slot in range(len(rendered_lines) + 1, self.max_line_items + 1)
            ],
            box_25_tax_id=provider.tax_id or "",
            box_25_tax_id_type=provider.tax_id_type.value if provider.tax_id else "",
            box_26_patient_account_number=claim.patient_account_number or claim.patient_id or "",
            box_27_accept_assignment="YES" if claim.accept_assignment else "NO",
            box_28_total_charge=format_money(claim.total_amount),
            box_29_amount_paid=format_money(claim.paid_amount),
            box_30_balance_due=format_money(claim.total_amount - claim.paid_amount),
            box_31_physician_signature=SIGNATURE_ON_FILE if provider.name else "",
            box_32_facility_name=facility.name or "",
            box_32_facility_address=facility.address.street or "",
            box_32_facility_city_state_zip=format_city_state_zip(facility.address),
            box_32a_facility_npi=facility.npi or "",
            box_33_billing_provider_name=provider.name or "",
            box_33_billing_provider_address=provider.address.street or "",
            box_33_billing_provider_city_state_zip=format_city_state_zip(provider.address),
            box_33_billing_provider_phone=provider.phone or "",
            box_33a_billing_provider_npi=provider.npi or "",
            omitted_line_count=omitted,
            warnings=warnings,
        )

    @staticmethod
    def _sex(person: PersonInfo) -> str:
        # The form only has M and F boxes
        return person.sex.value if person.sex and person.sex.value in ("M", "F") else ""

    @staticmethod
    def _map_line(slot: int, line_item: ClaimLineItemData, claim_rendering_npi: Optional[str]) -> Cms1500ServiceLine:
        return Cms1500ServiceLine(
            slot=slot,
            date_from=format_date(line_item.service_date),
            date_to=format_date(line_item.service_date_to or line_item.service_date),
            place_of_service=line_item.place_of_service or "",
            procedure_code=line_item.procedure_code or "",
            modifiers=list(line_item.modifiers[:4]),
            diagnosis_pointer=diagnosis_letter(line_item.diagnosis_pointer),
            charges=format_money(line_item.charge_amount),
            units=str(line_item.units),
            rendering_provider_npi=line_item.rendering_provider_npi or claim_rendering_npi or "",
        )
