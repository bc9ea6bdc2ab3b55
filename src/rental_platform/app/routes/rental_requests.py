"""Rental request routes: tenants ask for rooms, landlords answer."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import get_current_user_dep, require_role
from rental_platform.domain.models import User
from rental_platform.domain.schemas import (
    AcceptWithOfferRequest,
    ConfirmationResponse,
    OfferResponse,
    OfferTermsRequest,
    RentalRequestCreate,
    RentalRequestRespond,
    RentalRequestResponse,
)
from rental_platform.infra.database import get_db
from rental_platform.services.agreement_confirmation_service import AgreementConfirmationService
from rental_platform.services.rental_request_service import RentalRequestService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rental-requests", tags=["rental-requests"])


@router.post("", response_model=RentalRequestResponse, status_code=201)
async def create_rental_request(
    data: RentalRequestCreate,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).create(
        tenant_id=user.id,
        room_id=data.room_id,
        proposed_start_date=data.proposed_start_date,
        guest_count=data.guest_count,
        message=data.message,
        proposed_end_date=data.proposed_end_date,
        proposed_rent=data.proposed_rent,
    )


@router.get("/mine", response_model=list[RentalRequestResponse])
async def list_my_requests(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).list_for_tenant(user.id)


@router.get("/landlord", response_model=list[RentalRequestResponse])
async def list_landlord_requests(
    status: str | None = None,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).list_for_landlord(user.id, status=status)


@router.get("/{request_id}", response_model=RentalRequestResponse)
async def get_rental_request(
    request_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).get_for_actor(request_id, user.id)


@router.post("/{request_id}/accept", response_model=RentalRequestResponse)
async def accept_rental_request(
    request_id: str,
    data: RentalRequestRespond,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).accept(request_id, user.id, data.response_message)


@router.post("/{request_id}/accept-with-offer", response_model=OfferResponse)
async def accept_with_offer(
    request_id: str,
    data: AcceptWithOfferRequest,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    """Accept the request and send the tenant agreement terms to confirm."""
    result = await RentalRequestService(db).accept_and_offer(
        request_id,
        user.id,
        data.agreement_terms.model_dump(exclude_none=True),
        response_message=data.response_message,
    )
    return OfferResponse(
        rental_request=RentalRequestResponse.model_validate(result["rental_request"]),
        confirmation=ConfirmationResponse.model_validate(result["confirmation"]),
        email_sent=result["email_sent"],
    )


@router.post("/{request_id}/offer", response_model=OfferResponse)
async def offer_terms(
    request_id: str,
    data: OfferTermsRequest,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    """Send terms for a request that was accepted without an offer."""
    result = await AgreementConfirmationService(db).create_from_accepted_request(
        request_id,
        data.agreement_terms.model_dump(exclude_none=True),
        landlord_id=user.id,
    )
    request = await RentalRequestService(db).get_for_actor(request_id, user.id)
    return OfferResponse(
        rental_request=RentalRequestResponse.model_validate(request),
        confirmation=ConfirmationResponse.model_validate(result["confirmation"]),
        email_sent=result["email_sent"],
    )


@router.post("/{request_id}/reject", response_model=RentalRequestResponse)
async def reject_rental_request(
    request_id: str,
    data: RentalRequestRespond,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).reject(request_id, user.id, data.response_message)


@router.post("/{request_id}/withdraw", response_model=RentalRequestResponse)
async def withdraw_rental_request(
    request_id: str,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).withdraw(request_id, user.id)


@router.post("/{request_id}/viewed", response_model=RentalRequestResponse)
async def mark_request_viewed(
    request_id: str,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await RentalRequestService(db).mark_viewed(request_id, user.id)
