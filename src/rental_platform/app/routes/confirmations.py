"""Agreement confirmation routes: token preview, tenant decision, admin sweep."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import get_current_user_dep, require_role
from rental_platform.domain.models import AgreementConfirmation, User
from rental_platform.domain.schemas import (
    ConfirmationPreview,
    ConfirmationReject,
    ConfirmationResponse,
    ConfirmationStats,
)
from rental_platform.infra.database import get_db
from rental_platform.services.agreement_confirmation_service import AgreementConfirmationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agreement-confirmations", tags=["agreement-confirmations"])


def _preview(confirmation: AgreementConfirmation) -> ConfirmationPreview:
    base = ConfirmationResponse.model_validate(confirmation).model_dump()
    room = confirmation.room
    return ConfirmationPreview(
        **base,
        tenant_name=confirmation.tenant.name,
        landlord_name=confirmation.landlord.name,
        landlord_email=confirmation.landlord.email,
        landlord_phone=confirmation.landlord.phone,
        room_name=room.display_name,
        accommodation_name=room.accommodation.name,
        address=room.accommodation.address,
    )


# ---------------------------------------------------------------------------
# Token flow (link from the confirmation email)
# ---------------------------------------------------------------------------


@router.get("/token/{token}", response_model=ConfirmationPreview)
async def preview_confirmation(token: str, db: AsyncSession = Depends(get_db)):
    """Public: terms, parties and room for an unexpired confirmation link."""
    confirmation = await AgreementConfirmationService(db).get_by_token(token)
    return _preview(confirmation)


@router.post("/token/{token}/confirm", response_model=ConfirmationResponse)
async def confirm_agreement(
    token: str,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await AgreementConfirmationService(db).confirm(token, user.id)


@router.post("/token/{token}/reject", response_model=ConfirmationResponse)
async def reject_agreement(
    token: str,
    data: ConfirmationReject,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await AgreementConfirmationService(db).reject(token, user.id, data.reason)


# ---------------------------------------------------------------------------
# Authenticated
# ---------------------------------------------------------------------------


@router.get("/mine", response_model=list[ConfirmationResponse])
async def list_my_confirmations(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await AgreementConfirmationService(db).list_for_tenant(user.id)


@router.get("/stats", response_model=ConfirmationStats)
async def confirmation_stats(
    start_date: datetime | None = None,
    status: str | None = None,
    user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await AgreementConfirmationService(db).get_stats(start_date=start_date, status=status)


@router.post("/expire")
async def expire_confirmations(
    user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    """Run the expiry sweep now instead of waiting for the monitor."""
    count = await AgreementConfirmationService(db).expire_old_confirmations()
    return {"expired": count}


@router.get("/{confirmation_id}", response_model=ConfirmationPreview)
async def get_confirmation(
    confirmation_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    confirmation = await AgreementConfirmationService(db).get(confirmation_id, user.id)
    return _preview(confirmation)


@router.post("/{confirmation_id}/resend")
async def resend_confirmation(
    confirmation_id: str,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    email_sent = await AgreementConfirmationService(db).resend_confirmation_email(
        confirmation_id, user.id
    )
    return {"email_sent": email_sent}
