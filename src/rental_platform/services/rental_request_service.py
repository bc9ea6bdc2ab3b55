"""Rental request lifecycle: a tenant asks for a room, the landlord answers.

Every status change is a conditional UPDATE through the workflow state
machine, so two landlords' tabs (or a landlord and a withdrawing tenant)
cannot both win.
"""

import logging
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental_platform.domain.enums import RentalRequestStatus
from rental_platform.domain.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from rental_platform.domain.models import Accommodation, RentalRequest, Room, utcnow
from rental_platform.services.workflow_state_machine import require_transition

logger = logging.getLogger(__name__)

ENTITY = "rental_request"
MAX_MESSAGE_LENGTH = 1000


class RentalRequestService:
    """Create and answer rental requests."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, request_id: str) -> RentalRequest:
        result = await self.db.execute(
            select(RentalRequest)
            .options(selectinload(RentalRequest.tenant), selectinload(RentalRequest.room))
            .where(RentalRequest.id == request_id)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Rental request not found", context={"rental_request_id": request_id})
        return request

    async def get_for_actor(self, request_id: str, user_id: str) -> RentalRequest:
        request = await self.get(request_id)
        if user_id not in (request.tenant_id, request.landlord_id):
            raise ForbiddenError("Not a party to this rental request")
        return request

    async def list_for_tenant(self, tenant_id: str) -> list[RentalRequest]:
        result = await self.db.execute(
            select(RentalRequest)
            .options(selectinload(RentalRequest.room))
            .where(RentalRequest.tenant_id == tenant_id)
            .order_by(RentalRequest.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_landlord(self, landlord_id: str, status: str | None = None) -> list[RentalRequest]:
        stmt = (
            select(RentalRequest)
            .options(selectinload(RentalRequest.tenant), selectinload(RentalRequest.room))
            .where(RentalRequest.landlord_id == landlord_id)
        )
        if status:
            stmt = stmt.where(RentalRequest.status == status)
        result = await self.db.execute(stmt.order_by(RentalRequest.created_at.desc()))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        room_id: str,
        proposed_start_date: date,
        guest_count: int = 1,
        message: str | None = None,
        proposed_end_date: date | None = None,
        proposed_rent: int | None = None,
    ) -> RentalRequest:
        """Persist a pending request after checking the room can take it."""
        room = await self.db.get(Room, room_id)
        if room is None:
            raise NotFoundError("Room not found", context={"room_id": room_id})
        if not room.is_available:
            raise ConflictError("Room is not available", context={"room_id": room_id})

        if guest_count < 1:
            raise ValidationError("guest_count must be at least 1")
        if guest_count > room.capacity:
            raise ValidationError(
                f"Room holds at most {room.capacity} guests",
                context={"capacity": room.capacity, "guest_count": guest_count},
            )
        if proposed_start_date < date.today():
            raise ValidationError("proposed_start_date cannot be in the past")
        if proposed_end_date is not None and proposed_end_date <= proposed_start_date:
            raise ValidationError("proposed_end_date must be after proposed_start_date")
        if proposed_rent is not None and proposed_rent < 0:
            raise ValidationError("proposed_rent cannot be negative")
        if message and len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"message is limited to {MAX_MESSAGE_LENGTH} characters")

        accommodation = await self.db.get(Accommodation, room.accommodation_id)
        if accommodation is None:
            raise NotFoundError("Accommodation not found", context={"room_id": room_id})
        if accommodation.owner_id == tenant_id:
            raise ValidationError("Landlords cannot request their own rooms")

        request = RentalRequest(
            tenant_id=tenant_id,
            room_id=room.id,
            accommodation_id=accommodation.id,
            landlord_id=accommodation.owner_id,
            proposed_start_date=proposed_start_date,
            proposed_end_date=proposed_end_date,
            proposed_rent=proposed_rent,
            guest_count=guest_count,
            message=message,
            status=RentalRequestStatus.PENDING.value,
        )
        self.db.add(request)
        await self.db.commit()
        await self.db.refresh(request)

        logger.info(
            "Rental request %s created: tenant=%s room=%s landlord=%s",
            request.id, tenant_id, room.id, accommodation.owner_id,
        )
        return request

    # ------------------------------------------------------------------
    # Landlord / tenant responses
    # ------------------------------------------------------------------

    async def _check_landlord(self, request_id: str, landlord_id: str) -> RentalRequest:
        request = await self.db.get(RentalRequest, request_id)
        if request is None:
            raise NotFoundError("Rental request not found", context={"rental_request_id": request_id})
        if request.landlord_id != landlord_id:
            raise ForbiddenError("Only the room's landlord can respond to this request")
        return request

    async def _accept_uncommitted(
        self, request_id: str, landlord_id: str, response_message: str | None
    ) -> RentalRequest:
        await self._check_landlord(request_id, landlord_id)
        now = utcnow()
        await require_transition(
            self.db,
            RentalRequest,
            ENTITY,
            request_id,
            RentalRequestStatus.ACCEPTED,
            response_message=response_message,
            responded_at=now,
            accepted_at=now,
        )
        return await self.db.get(RentalRequest, request_id, populate_existing=True)

    async def accept(
        self, request_id: str, landlord_id: str, response_message: str | None = None
    ) -> RentalRequest:
        request = await self._accept_uncommitted(request_id, landlord_id, response_message)
        await self.db.commit()
        logger.info("Rental request %s accepted by landlord %s", request_id, landlord_id)
        return request

    async def reject(
        self, request_id: str, landlord_id: str, response_message: str | None = None
    ) -> RentalRequest:
        await self._check_landlord(request_id, landlord_id)
        await require_transition(
            self.db,
            RentalRequest,
            ENTITY,
            request_id,
            RentalRequestStatus.REJECTED,
            response_message=response_message,
            responded_at=utcnow(),
        )
        await self.db.commit()
        logger.info("Rental request %s rejected by landlord %s", request_id, landlord_id)
        return await self.db.get(RentalRequest, request_id, populate_existing=True)

    async def withdraw(self, request_id: str, tenant_id: str) -> RentalRequest:
        request = await self.db.get(RentalRequest, request_id)
        if request is None:
            raise NotFoundError("Rental request not found", context={"rental_request_id": request_id})
        if request.tenant_id != tenant_id:
            raise ForbiddenError("Only the requesting tenant can withdraw this request")
        await require_transition(
            self.db, RentalRequest, ENTITY, request_id, RentalRequestStatus.WITHDRAWN
        )
        await self.db.commit()
        logger.info("Rental request %s withdrawn by tenant %s", request_id, tenant_id)
        return await self.db.get(RentalRequest, request_id, populate_existing=True)

    async def accept_and_offer(
        self,
        request_id: str,
        landlord_id: str,
        agreement_terms: dict,
        response_message: str | None = None,
    ) -> dict:
        """Accept the request and create its agreement confirmation in one commit.

        Either both the ``accepted`` status and the confirmation exist, or
        neither does. The confirmation email goes out after the commit.

        Returns:
            Dict with ``rental_request``, ``confirmation`` and ``email_sent``.
        """
        from rental_platform.services.agreement_confirmation_service import (
            AgreementConfirmationService,
        )

        confirmations = AgreementConfirmationService(self.db)
        try:
            request = await self._accept_uncommitted(request_id, landlord_id, response_message)
            confirmation = await confirmations.build_from_accepted_request(request, agreement_terms)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Rental request %s accepted with offer: confirmation=%s",
            request_id, confirmation.id,
        )
        email_sent = await confirmations.send_confirmation_email(confirmation.id)
        return {
            "rental_request": await self.db.get(RentalRequest, request_id),
            "confirmation": confirmation,
            "email_sent": email_sent,
        }

    async def mark_viewed(self, request_id: str, landlord_id: str) -> RentalRequest:
        await self._check_landlord(request_id, landlord_id)
        await self.db.execute(
            update(RentalRequest)
            .where(RentalRequest.id == request_id, RentalRequest.viewed_by_landlord.isnot(True))
            .values(viewed_by_landlord=True, viewed_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        return await self.db.get(RentalRequest, request_id, populate_existing=True)
