import base64
import copy
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from insurance_billing.src.api.dependencies import (
    get_audit_logger,
    get_encryption_service,
    get_invoicing_client,
    get_metrics_collector,
)
from insurance_billing.src.api.models.claim_models import ClaimCreate
from insurance_billing.src.core.database import models  # noqa: F401 - registers tables on Base.metadata
from insurance_billing.src.core.database.db_session import Base, get_db_session
from insurance_billing.src.core.monitoring.app_metrics import MetricsCollector
from insurance_billing.src.core.monitoring.audit_logger import AuditLogger
from insurance_billing.src.core.security.encryption_service import EncryptionService
from insurance_billing.src.integrations.invoicing_client import InvoicingClient
from insurance_billing.src.main import app

# One in-memory database per test. StaticPool keeps every session on the same connection,
# otherwise each new connection would see an empty database.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_ENCRYPTION_KEY = base64.urlsafe_b64encode(bytes(range(32))).decode()

LOCATION_ID = "loc_test_a"
OTHER_LOCATION_ID = "loc_test_b"


@pytest_asyncio.fixture()
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL, echo=False, poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(test_engine):
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def encryption_service() -> EncryptionService:
    return EncryptionService(encryption_key=TEST_ENCRYPTION_KEY)


@pytest.fixture()
def metrics() -> MagicMock:
    return MagicMock(spec=MetricsCollector)


@pytest.fixture()
def invoicing_client() -> AsyncMock:
    return AsyncMock(spec=InvoicingClient)


@pytest.fixture()
def audit_logger() -> AsyncMock:
    return AsyncMock(spec=AuditLogger)


def _scrub_ready_claim() -> dict:
    address = {"street": "12 Main St", "city": "Springfield", "state": "IL", "zip_code": "62701"}
    return {
        "patient_id": "contact_123",
        "appointment_id": "appt_456",
        "patient": {
            "last_name": "Doe", "first_name": "Jane", "middle_initial": "Q",
            "date_of_birth": "1985-04-12", "sex": "F", "address": address, "phone": "5551234567",
        },
        "insured": {
            "last_name": "Doe", "first_name": "Jane", "middle_initial": "Q",
            "date_of_birth": "1985-04-12", "sex": "F", "address": address, "phone": "5551234567",
        },
        "relationship_to_insured": "self",
        "insurance_type": "group",
        "insured_member_id": "XYZ123456789",
        "policy_group_number": "GRP-001",
        "insurance_plan_name": "Acme PPO",
        "payer_id": "payer_acme",
        "diagnosis_codes": ["F41.1", "F32.9"],
        "line_items": [{
            "service_date": "2026-10-01",
            "place_of_service": "02",
            "procedure_code": "90834",
            "modifiers": ["95"],
            "charge_amount": "150.00",
            "units": 1,
            "diagnosis_pointer": 1,
        }],
        "billing_provider": {
            "name": "Calm Minds Therapy", "address": address, "phone": "5559876543",
            "npi": "1234567893", "tax_id": "12-3456789", "tax_id_type": "EIN",
        },
        "service_facility": {"name": "Calm Minds Telehealth", "address": address, "npi": "1234567893"},
        "rendering_provider_npi": "1234567893",
    }


@pytest.fixture()
def claim_payload() -> Callable[..., dict]:
    """Returns a builder for a complete, scrub-ready claim request body. Keyword overrides replace top-level keys."""
    def _build(**overrides) -> dict:
        payload = copy.deepcopy(_scrub_ready_claim())
        payload.update(overrides)
        return payload
    return _build


@pytest.fixture()
def claim_create(claim_payload) -> Callable[..., ClaimCreate]:
    def _build(**overrides) -> ClaimCreate:
        return ClaimCreate.model_validate(claim_payload(**overrides))
    return _build


@pytest_asyncio.fixture()
async def client(session_factory, encryption_service, invoicing_client, audit_logger) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    HTTP client bound to the app in-process. Requests share the test database; the
    invoicing API and audit storage are mocks the test can program and inspect.
    """
    async def override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_encryption_service] = lambda: encryption_service
    app.dependency_overrides[get_invoicing_client] = lambda: invoicing_client
    app.dependency_overrides[get_audit_logger] = lambda: audit_logger
    app.dependency_overrides[get_metrics_collector] = lambda: MagicMock(spec=MetricsCollector)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test",
                                 headers={"X-Location-Id": LOCATION_ID, "X-User-Id": "user_1"}) as c:
        yield c

    app.dependency_overrides.clear()
