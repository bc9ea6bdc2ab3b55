"""Landlord wallet routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import require_role
from rental_platform.domain.models import User
from rental_platform.domain.schemas import WalletResponse, WalletTransactionResponse
from rental_platform.infra.database import get_db
from rental_platform.services.wallet_service import WalletService

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("", response_model=WalletResponse)
async def get_wallet(
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    service = WalletService(db)
    transactions = await service.list_transactions(user.id)
    return WalletResponse(
        balance=await service.get_balance(user.id),
        transactions=[WalletTransactionResponse.model_validate(t) for t in transactions],
    )
