import uuid
from typing import List

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.payment_models import Payer, PayerCreate
from ...core.database.models.payments_db import PayerModel
from ...core.exceptions import ConflictError, NotFoundError

logger = structlog.get_logger(__name__)


class PayerRegistry:
    """Per-location list of insurance companies payments can come from."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create_payer(self, location_id: str, payer_data: PayerCreate) -> Payer:
        payer_model = PayerModel(
            payer_id=payer_data.payer_id or uuid.uuid4().hex,
            location_id=location_id,
            name=payer_data.name,
            address=payer_data.address,
        )
        self.db.add(payer_model)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Payer '{payer_data.payer_id}' already exists.")
        logger.info("Payer created", payer_id=payer_model.payer_id, location_id=location_id)
        return Payer.model_validate(payer_model)

    async def get_payer(self, location_id: str, payer_id: str) -> Payer:
        return Payer.model_validate(await self._get_payer_model(location_id, payer_id))

    async def list_payers(self, location_id: str) -> List[Payer]:
        stmt = select(PayerModel).where(PayerModel.location_id == location_id).order_by(PayerModel.name)
        rows = (await self.db.execute(stmt)).scalars().all()
        return [Payer.model_validate(row) for row in rows]

    async def delete_payer(self, location_id: str, payer_id: str) -> None:
        payer_model = await self._get_payer_model(location_id, payer_id)
        await self.db.delete(payer_model)
        await self.db.commit()
        logger.info("Payer deleted", payer_id=payer_id, location_id=location_id)

    async def _get_payer_model(self, location_id: str, payer_id: str) -> PayerModel:
        stmt = select(PayerModel).where(PayerModel.location_id == location_id, PayerModel.payer_id == payer_id)
        payer_model = (await self.db.execute(stmt)).scalars().first()
        if payer_model is None:
            raise NotFoundError("Payer", payer_id)
        return payer_model
