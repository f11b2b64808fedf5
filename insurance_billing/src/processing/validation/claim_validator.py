from typing import List

import structlog

from ...api.models.claim_models import Claim, ClaimLineItemData, PersonInfo
from ...core.config.settings import get_settings

logger = structlog.get_logger(__name__)


class ClaimValidator:
    def __init__(self, max_line_items: int = None):
        self.max_line_items = max_line_items or get_settings().CMS1500_MAX_LINE_ITEMS

    def validate_for_scrub(self, claim: Claim) -> List[str]:
        """
        Checks that every mandatory CMS-1500 field is populated.
        Returns a list of error messages. An empty list means the claim can be scrubbed.
        """
        errors: List[str] = []

        errors.extend(self._validate_person(claim.patient, "patient", require_demographics=True))
        errors.extend(self._validate_person(claim.insured, "insured", require_demographics=False))

        if not claim.insured_member_id:
            errors.append("Missing insured member ID.")
        if claim.relationship_to_insured is None:
            errors.append("Missing patient relationship to insured.")
        if claim.insurance_type is None:
            errors.append("Missing insurance type.")

        if not claim.diagnosis_codes:
            errors.append("Claim must have at least one diagnosis code.")

        if not claim.line_items:
            errors.append("Claim must have at least one line item.")
        else:
            if len(claim.line_items) > self.max_line_items:
                errors.append(
                    f"Claim has {len(claim.line_items)} line items; a CMS-1500 form holds at most {self.max_line_items}."
                )
            for i, line_item in enumerate(claim.line_items):
                errors.extend(self._validate_line_item(line_item, line_number=i + 1, diagnosis_count=len(claim.diagnosis_codes)))

        if not claim.billing_provider.npi:
            errors.append("Missing billing provider NPI.")
        if not claim.billing_provider.tax_id:
            errors.append("Missing billing provider tax ID.")

        if errors:
            logger.debug("Claim scrub validation failed", claim_id=claim.claim_id, errors=errors)
        else:
            logger.debug("Claim scrub validation successful", claim_id=claim.claim_id)

        return errors

    def _validate_person(self, person: PersonInfo, label: str, require_demographics: bool) -> List[str]:
        person_errors: List[str] = []
        if not person.last_name:
            person_errors.append(f"Missing {label} last name.")
        if not person.first_name:
            person_errors.append(f"Missing {label} first name.")

        if require_demographics:
            if person.date_of_birth is None:
                person_errors.append(f"Missing {label} date of birth.")
            if person.sex is None:
                person_errors.append(f"Missing {label} sex.")
            address = person.address
            if not (address.street and address.city and address.state and address.zip_code):
                person_errors.append(f"Incomplete {label} address.")
        return person_errors

    def _validate_line_item(self, line_item: ClaimLineItemData, line_number: int, diagnosis_count: int) -> List[str]:
        """Validates a single claim line item."""
        line_errors: List[str] = []

        if not line_item.procedure_code:
            line_errors.append(f"Line {line_number}: Missing procedure code.")

        if line_item.charge_amount <= 0:
            line_errors.append(f"Line {line_number}: Charge amount ({line_item.charge_amount}) must be greater than zero.")

        if line_item.units <= 0:
            line_errors.append(f"Line {line_number}: Units ({line_item.units}) must be positive.")

        if line_item.diagnosis_pointer > diagnosis_count:
            line_errors.append(
                f"Line {line_number}: Diagnosis pointer {line_item.diagnosis_pointer} does not reference a diagnosis code."
            )

        return line_errors
