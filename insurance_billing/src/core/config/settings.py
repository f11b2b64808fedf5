from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from decimal import Decimal
from typing import Dict, Optional

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./insurance_billing.db"
    TEST_DATABASE_URL: Optional[str] = None

    # Database Connection Pool Settings (ignored for sqlite)
    DB_POOL_SIZE: int = Field(
        5,
        gt=0,
        description="The number of connections to keep persistently in the pool."
    )
    DB_MAX_OVERFLOW: int = Field(
        10,
        ge=0,
        description="The maximum number of connections that can be opened beyond DB_POOL_SIZE."
    )
    DB_ECHO: bool = False

    # External invoicing / CRM API (GoHighLevel)
    GHL_API_BASE_URL: str = "https://services.leadconnectorhq.com"
    GHL_API_VERSION: str = "2021-07-28"
    GHL_API_KEY: Optional[str] = Field(None, description="Fallback API key used when a location has no dedicated key.")
    LOCATION_API_KEYS: Dict[str, str] = Field(
        default_factory=dict,
        description="JSON mapping of locationId -> API key, e.g. '{\"loc_1\": \"key\"}'."
    )
    INVOICING_TIMEOUT_SECONDS: float = Field(
        10.0,
        gt=0,
        description="Timeout for a single call to the external invoicing API."
    )

    # Application Security Settings
    APP_ENCRYPTION_KEY: str = "must_be_32_bytes_long_for_aes256_key!"
    # IMPORTANT: This is a default development key.
    # It MUST be overridden by an environment variable in production.
    # The key should be a base64 url-safe encoded 32-byte random value.

    # Claim settings
    CLAIM_NUMBER_PREFIX: str = "CLM"
    CLAIM_NUMBER_MAX_ATTEMPTS: int = Field(3, gt=0, description="Retries when a generated claim number collides.")
    CMS1500_MAX_LINE_ITEMS: int = Field(6, gt=0, description="Service line slots on one CMS-1500 page (box 24).")

    # Billing defaults for locations that have not saved their own settings
    DEFAULT_PROCEDURE_CODE: str = "90837"
    DEFAULT_SESSION_FEE: Decimal = Decimal("175.00")
    DEFAULT_PLACE_OF_SERVICE: str = "02"
    DEFAULT_MODIFIER: Optional[str] = "95"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_file_encoding='utf-8')

@lru_cache()
def get_settings():
    return Settings()
