from typing import List, Optional

from pydantic import BaseModel, Field


class Cms1500ServiceLine(BaseModel):
    """One of the six printed rows of box 24. Unused rows have only the slot set."""
    slot: int = Field(..., ge=1)
    date_from: str = ""  # 24A, MM DD YY
    date_to: str = ""
    place_of_service: str = ""  # 24B
    emg: str = ""  # 24C
    procedure_code: str = ""  # 24D
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_pointer: str = ""  # 24E, A-D
    charges: str = ""  # 24F
    units: str = ""  # 24G
    epsdt: str = ""  # 24H
    id_qualifier: str = ""  # 24I
    rendering_provider_npi: str = ""  # 24J


class Cms1500View(BaseModel):
    """Formatted field values keyed by CMS-1500 box. Every value is print-ready text."""
    claim_id: str
    claim_number: str

    box_1_insurance_type: str = ""
    box_1a_insured_id: str = ""
    box_2_patient_name: str = ""
    box_3_patient_birth_date: str = ""
    box_3_patient_sex: str = ""
    box_4_insured_name: str = ""
    box_5_patient_address: str = ""
    box_5_patient_city: str = ""
    box_5_patient_state: str = ""
    box_5_patient_zip: str = ""
    box_5_patient_phone: str = ""
    box_6_relationship: str = ""
    box_7_insured_address: str = ""
    box_7_insured_city: str = ""
    box_7_insured_state: str = ""
    box_7_insured_zip: str = ""
    box_7_insured_phone: str = ""
    box_11_policy_group: str = ""
    box_11a_insured_birth_date: str = ""
    box_11a_insured_sex: str = ""
    box_11c_plan_name: str = ""
    box_12_patient_signature: str = ""
    box_13_insured_signature: str = ""

    box_21_icd_indicator: str = "0"
    box_21_diagnoses: List[str] = Field(default_factory=lambda: ["", "", "", ""])
    box_23_prior_authorization: str = ""
    box_24_lines: List[Cms1500ServiceLine] = Field(default_factory=list)

    box_25_tax_id: str = ""
    box_25_tax_id_type: str = ""
    box_26_patient_account_number: str = ""
    box_27_accept_assignment: str = ""
    box_28_total_charge: str = ""
    box_29_amount_paid: str = ""
    box_30_balance_due: str = ""
    box_31_physician_signature: str = ""
    box_32_facility_name: str = ""
    box_32_facility_address: str = ""
    box_32_facility_city_state_zip: str = ""
    box_32a_facility_npi: str = ""
    box_33_billing_provider_name: str = ""
    box_33_billing_provider_address: str = ""
    box_33_billing_provider_city_state_zip: str = ""
    box_33_billing_provider_phone: str = ""
    box_33a_billing_provider_npi: str = ""

    omitted_line_count: int = 0
    warnings: List[str] = Field(default_factory=list)
