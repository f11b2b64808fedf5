import pytest

from insurance_billing.src.api.models.payment_models import PayerCreate
from insurance_billing.src.core.exceptions import ConflictError, NotFoundError
from insurance_billing.src.processing.payments.payer_registry import PayerRegistry


@pytest.fixture
def registry(db_session) -> PayerRegistry:
    return PayerRegistry(db_session)


@pytest.mark.asyncio
async def test_create_and_list_payers(registry: PayerRegistry):
    await registry.create_payer("loc_test_a", PayerCreate(payer_id="p_bcbs", name="Blue Shield", address="PO Box 1"))
    generated = await registry.create_payer("loc_test_a", PayerCreate(name="Aetna"))

    assert generated.payer_id
    payers = await registry.list_payers("loc_test_a")
    assert [p.name for p in payers] == ["Aetna", "Blue Shield"]
    assert await registry.list_payers("loc_test_b") == []


@pytest.mark.asyncio
async def test_duplicate_payer_id_conflicts(registry: PayerRegistry):
    await registry.create_payer("loc_test_a", PayerCreate(payer_id="p_1", name="Aetna"))
    with pytest.raises(ConflictError):
        await registry.create_payer("loc_test_a", PayerCreate(payer_id="p_1", name="Aetna again"))

    # Same id is fine in another location
    other = await registry.create_payer("loc_test_b", PayerCreate(payer_id="p_1", name="Aetna"))
    assert other.location_id == "loc_test_b"


@pytest.mark.asyncio
async def test_delete_payer(registry: PayerRegistry):
    await registry.create_payer("loc_test_a", PayerCreate(payer_id="p_1", name="Aetna"))

    with pytest.raises(NotFoundError):
        await registry.delete_payer("loc_test_b", "p_1")

    await registry.delete_payer("loc_test_a", "p_1")
    with pytest.raises(NotFoundError):
        await registry.get_payer("loc_test_a", "p_1")
