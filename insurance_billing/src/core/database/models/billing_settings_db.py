from sqlalchemy import Column, Integer, String, Numeric, TIMESTAMP
from ..db_session import Base
from .claims_db import utcnow


class LocationBillingSettingsModel(Base):
    __tablename__ = "location_billing_settings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    location_id = Column(String(100), nullable=False, unique=True, index=True)

    default_procedure_code = Column(String(20), nullable=True) # e.g. 90837
    default_session_fee = Column(Numeric(12, 2), nullable=True)
    default_place_of_service = Column(String(2), nullable=True) # e.g. 02 (telehealth)
    default_modifier = Column(String(2), nullable=True)

    billing_provider_name = Column(String(200), nullable=True)
    billing_provider_street = Column(String(255), nullable=True)
    billing_provider_city = Column(String(100), nullable=True)
    billing_provider_state = Column(String(2), nullable=True)
    billing_provider_zip_code = Column(String(10), nullable=True)
    billing_provider_phone = Column(String(20), nullable=True)
    billing_provider_npi = Column(String(10), nullable=True)
    billing_provider_tax_id = Column(String(20), nullable=True)
    billing_provider_tax_id_type = Column(String(3), nullable=True)

    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<LocationBillingSettingsModel(location_id='{self.location_id}')>"
