from typing import List

from fastapi import APIRouter, Depends, Response

from ..dependencies import TenantContext, get_payer_registry, get_tenant_context
from ..models.payment_models import Payer, PayerCreate
from ...processing.payments.payer_registry import PayerRegistry

router = APIRouter()


@router.get("/", response_model=List[Payer])
async def list_payers(
    tenant: TenantContext = Depends(get_tenant_context),
    registry: PayerRegistry = Depends(get_payer_registry),
):
    return await registry.list_payers(tenant.location_id)


@router.post("/", response_model=Payer, status_code=201)
async def create_payer(
    payer_data: PayerCreate,
    tenant: TenantContext = Depends(get_tenant_context),
    registry: PayerRegistry = Depends(get_payer_registry),
):
    return await registry.create_payer(tenant.location_id, payer_data)


@router.delete("/{payer_id}", status_code=204)
async def delete_payer(
    payer_id: str,
    tenant: TenantContext = Depends(get_tenant_context),
    registry: PayerRegistry = Depends(get_payer_registry),
):
    await registry.delete_payer(tenant.location_id, payer_id)
    return Response(status_code=204)
