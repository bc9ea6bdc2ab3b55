"""Tenancy agreement routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import get_current_user_dep, require_role
from rental_platform.domain.models import User
from rental_platform.domain.schemas import TenancyEnd, TenancyResponse
from rental_platform.infra.database import get_db
from rental_platform.services.contract_service import ContractService

router = APIRouter(prefix="/api/tenancies", tags=["tenancies"])


@router.get("/mine", response_model=list[TenancyResponse])
async def list_my_tenancies(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await ContractService(db).list_for_user(user.id)


@router.get("/room/{room_id}/active", response_model=TenancyResponse)
async def active_tenancy_for_room(
    room_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = ContractService(db)
    agreement = await service.get_active_tenancy_for_room(room_id)
    return await service.get_tenancy(agreement.id, user.id)


@router.get("/{agreement_id}", response_model=TenancyResponse)
async def get_tenancy(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await ContractService(db).get_tenancy(agreement_id, user.id)


@router.post("/{agreement_id}/end", response_model=TenancyResponse)
async def end_tenancy(
    agreement_id: str,
    data: TenancyEnd,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await ContractService(db).end_tenancy(
        agreement_id, user.id, status=data.status, reason=data.reason
    )
