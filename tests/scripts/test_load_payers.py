import pytest
from sqlalchemy import select

from insurance_billing.scripts.data.load_payers import load_payer_rows
from insurance_billing.src.core.database.models.payments_db import PayerModel


@pytest.mark.asyncio
async def test_load_payer_rows_inserts_and_updates(db_session):
    applied = await load_payer_rows(db_session, "loc_test_a", [
        {"payer_id": "p_aetna", "name": "Aetna", "address": "PO Box 981106, El Paso, TX"},
        {"payer_id": "p_bcbs", "name": "Blue Cross", "address": ""},
    ])
    assert applied == 2

    applied = await load_payer_rows(db_session, "loc_test_a", [
        {"payer_id": "p_bcbs", "name": "Blue Cross Blue Shield"},
    ])
    assert applied == 1

    rows = (await db_session.execute(select(PayerModel).order_by(PayerModel.payer_id))).scalars().all()
    assert [(r.payer_id, r.name, r.address) for r in rows] == [
        ("p_aetna", "Aetna", "PO Box 981106, El Paso, TX"),
        ("p_bcbs", "Blue Cross Blue Shield", None),
    ]


@pytest.mark.asyncio
async def test_load_payer_rows_skips_bad_rows(db_session):
    applied = await load_payer_rows(db_session, "loc_test_a", [
        {"name": "No id column"},
        {"payer_id": " ", "name": "Blank id"},
        {"payer_id": "p_ok", "name": "Cigna"},
    ])

    assert applied == 1
    rows = (await db_session.execute(select(PayerModel))).scalars().all()
    assert [r.payer_id for r in rows] == ["p_ok"]
