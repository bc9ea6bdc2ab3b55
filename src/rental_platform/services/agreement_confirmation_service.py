"""Agreement confirmation service: tokenized lease-terms confirmation flow.

After a landlord accepts a rental request, the agreed terms are snapshotted
into an AgreementConfirmation and the tenant receives a link carrying a
256-bit token. The token works for 48 hours; after that the confirmation is
swept to ``expired`` and the link resolves to nothing.
"""

import logging
import secrets
from datetime import date, datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental_platform.app.config import get_settings
from rental_platform.domain.enums import ConfirmationStatus, RentalRequestStatus
from rental_platform.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rental_platform.domain.models import (
    AgreementConfirmation,
    RentalRequest,
    Room,
    utcnow,
)
from rental_platform.services import email_service
from rental_platform.services.workflow_state_machine import require_transition

logger = logging.getLogger(__name__)

ENTITY = "agreement_confirmation"
TOKEN_BYTES = 32


def _iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _with_parties():
    return (
        selectinload(AgreementConfirmation.tenant),
        selectinload(AgreementConfirmation.landlord),
        selectinload(AgreementConfirmation.room).selectinload(Room.accommodation),
    )


class AgreementConfirmationService:
    """Create, preview, confirm, reject and expire agreement confirmations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def build_from_accepted_request(
        self, request: RentalRequest, agreement_terms: dict
    ) -> AgreementConfirmation:
        """Add a pending confirmation for ``request`` to the session without committing.

        Room utility rates and additional fees are copied into the terms at
        this moment; later room edits do not reach the confirmation.
        """
        if request.status != RentalRequestStatus.ACCEPTED.value:
            raise InvalidStateError(
                "Rental request is not accepted",
                context={"rental_request_id": request.id, "status": request.status},
            )

        room = await self.db.get(Room, request.room_id)
        if room is None:
            raise NotFoundError("Room not found", context={"room_id": request.room_id})

        terms = dict(agreement_terms or {})
        start_date = terms.get("start_date") or request.proposed_start_date
        end_date = terms.get("end_date", request.proposed_end_date)
        monthly_rent = terms.get("monthly_rent")
        if monthly_rent is None:
            monthly_rent = request.proposed_rent if request.proposed_rent is not None else room.base_rent
        deposit = terms.get("deposit")
        if deposit is None:
            deposit = room.deposit

        if int(monthly_rent) < 0 or int(deposit) < 0:
            raise ValidationError("monthly_rent and deposit cannot be negative")
        if end_date is not None and _iso(end_date) <= _iso(start_date):
            raise ValidationError("end_date must be after start_date")

        snapshot = {
            "start_date": _iso(start_date),
            "end_date": _iso(end_date),
            "monthly_rent": int(monthly_rent),
            "deposit": int(deposit),
            "notes": terms.get("notes"),
            "utility_rates": dict(room.utility_rates or {}),
            "additional_fees": list(room.additional_fees or []),
        }

        now = utcnow()
        confirmation = AgreementConfirmation(
            rental_request_id=request.id,
            tenant_id=request.tenant_id,
            landlord_id=request.landlord_id,
            room_id=room.id,
            confirmation_token=secrets.token_hex(TOKEN_BYTES),
            agreement_terms=snapshot,
            status=ConfirmationStatus.PENDING.value,
            expires_at=now + timedelta(hours=self.settings.confirmation_ttl_hours),
        )
        self.db.add(confirmation)
        await self.db.flush()

        # One live confirmation per accepted request
        claimed = await self.db.execute(
            update(RentalRequest)
            .where(
                RentalRequest.id == request.id,
                RentalRequest.status == RentalRequestStatus.ACCEPTED.value,
                RentalRequest.agreement_confirmation_id.is_(None),
            )
            .values(agreement_confirmation_id=confirmation.id)
            .execution_options(synchronize_session="fetch")
        )
        if claimed.rowcount != 1:
            raise ConflictError(
                "Rental request already has an agreement confirmation",
                context={"rental_request_id": request.id},
            )
        return confirmation

    async def create_from_accepted_request(
        self, rental_request_id: str, agreement_terms: dict, landlord_id: str | None = None
    ) -> dict:
        """Create a confirmation for an already-accepted request and email the tenant.

        Raises:
            ConflictError: the request already has a live confirmation.

        Returns:
            Dict with ``confirmation`` and ``email_sent``. A failed email is
            logged but does not roll back the confirmation.
        """
        request = await self.db.get(RentalRequest, rental_request_id, populate_existing=True)
        if request is None:
            raise NotFoundError("Rental request not found", context={"rental_request_id": rental_request_id})
        if landlord_id is not None and request.landlord_id != landlord_id:
            raise ForbiddenError("Only the room's landlord can offer terms for this request")

        try:
            confirmation = await self.build_from_accepted_request(request, agreement_terms)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(
            "Agreement confirmation %s created for rental request %s (expires %s)",
            confirmation.id, rental_request_id, confirmation.expires_at.isoformat(),
        )

        email_sent = await self.send_confirmation_email(confirmation.id)
        return {"confirmation": confirmation, "email_sent": email_sent}

    async def send_confirmation_email(self, confirmation_id: str) -> bool:
        confirmation = await self._load(confirmation_id)
        room = confirmation.room
        terms = confirmation.agreement_terms or {}
        data = {
            "tenant_name": confirmation.tenant.name,
            "landlord_name": confirmation.landlord.name,
            "room_name": room.display_name,
            "accommodation_name": room.accommodation.name if room.accommodation else "",
            "monthly_rent": terms.get("monthly_rent"),
            "deposit": terms.get("deposit"),
            "start_date": terms.get("start_date"),
            "confirmation_token": confirmation.confirmation_token,
            "additional_fees": terms.get("additional_fees"),
        }
        sent = await email_service.send_agreement_confirmation_email(confirmation.tenant.email, data)
        if not sent:
            logger.error(
                "Confirmation email for %s was not delivered to %s",
                confirmation.id, confirmation.tenant.email,
            )
        return sent

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _load(self, confirmation_id: str) -> AgreementConfirmation:
        result = await self.db.execute(
            select(AgreementConfirmation)
            .options(*_with_parties())
            .where(AgreementConfirmation.id == confirmation_id)
            .execution_options(populate_existing=True)
        )
        confirmation = result.scalar_one_or_none()
        if confirmation is None:
            raise NotFoundError("Agreement confirmation not found", context={"confirmation_id": confirmation_id})
        return confirmation

    async def get(self, confirmation_id: str, user_id: str | None = None) -> AgreementConfirmation:
        confirmation = await self._load(confirmation_id)
        if user_id is not None and user_id not in (confirmation.tenant_id, confirmation.landlord_id):
            raise ForbiddenError("Not a party to this agreement")
        return confirmation

    async def get_by_token(self, token: str) -> AgreementConfirmation:
        """Public preview. Expired tokens resolve to NotFound, whatever their status."""
        result = await self.db.execute(
            select(AgreementConfirmation)
            .options(*_with_parties())
            .where(
                AgreementConfirmation.confirmation_token == token,
                AgreementConfirmation.expires_at > utcnow(),
            )
        )
        confirmation = result.scalar_one_or_none()
        if confirmation is None:
            raise NotFoundError("Confirmation not found or expired")
        return confirmation

    async def _get_pending_by_token(self, token: str, tenant_id: str) -> AgreementConfirmation:
        result = await self.db.execute(
            select(AgreementConfirmation).where(
                AgreementConfirmation.confirmation_token == token,
                AgreementConfirmation.status == ConfirmationStatus.PENDING.value,
                AgreementConfirmation.expires_at > utcnow(),
            )
        )
        confirmation = result.scalar_one_or_none()
        if confirmation is None:
            raise NotFoundError("Confirmation not found, already handled or expired")
        if confirmation.tenant_id != tenant_id:
            raise ForbiddenError("This agreement belongs to another tenant")
        return confirmation

    async def list_for_tenant(self, tenant_id: str) -> list[AgreementConfirmation]:
        result = await self.db.execute(
            select(AgreementConfirmation)
            .options(*_with_parties())
            .where(AgreementConfirmation.tenant_id == tenant_id)
            .order_by(AgreementConfirmation.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Tenant decisions
    # ------------------------------------------------------------------

    async def confirm(self, token: str, tenant_id: str) -> AgreementConfirmation:
        confirmation = await self._get_pending_by_token(token, tenant_id)
        await require_transition(
            self.db,
            AgreementConfirmation,
            ENTITY,
            confirmation.id,
            ConfirmationStatus.CONFIRMED,
            AgreementConfirmation.expires_at > utcnow(),
            confirmed_at=utcnow(),
        )
        await self.db.commit()
        logger.info("Agreement confirmation %s confirmed by tenant %s", confirmation.id, tenant_id)
        return await self._load(confirmation.id)

    async def reject(self, token: str, tenant_id: str, reason: str | None = None) -> AgreementConfirmation:
        """Reject the terms and hand the rental request back to the landlord.

        The confirmation and the request change in the same transaction.
        """
        confirmation = await self._get_pending_by_token(token, tenant_id)
        try:
            await require_transition(
                self.db,
                AgreementConfirmation,
                ENTITY,
                confirmation.id,
                ConfirmationStatus.REJECTED,
                AgreementConfirmation.expires_at > utcnow(),
                rejected_at=utcnow(),
                rejection_reason=reason,
            )
            await require_transition(
                self.db,
                RentalRequest,
                "rental_request",
                confirmation.rental_request_id,
                RentalRequestStatus.PENDING,
                agreement_confirmation_id=None,
                accepted_at=None,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Agreement confirmation %s rejected by tenant %s; request %s back to pending",
            confirmation.id, tenant_id, confirmation.rental_request_id,
        )
        return await self._load(confirmation.id)

    async def resend_confirmation_email(self, confirmation_id: str, tenant_id: str) -> bool:
        result = await self.db.execute(
            select(AgreementConfirmation).where(
                AgreementConfirmation.id == confirmation_id,
                AgreementConfirmation.tenant_id == tenant_id,
                AgreementConfirmation.status == ConfirmationStatus.PENDING.value,
                AgreementConfirmation.expires_at > utcnow(),
            )
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError("Confirmation not found or not resendable")
        return await self.send_confirmation_email(confirmation_id)

    # ------------------------------------------------------------------
    # Sweep / reporting
    # ------------------------------------------------------------------

    async def expire_old_confirmations(self) -> int:
        """Move every overdue pending confirmation to ``expired``. Idempotent."""
        now = utcnow()
        result = await self.db.execute(
            update(AgreementConfirmation)
            .where(
                AgreementConfirmation.status == ConfirmationStatus.PENDING.value,
                AgreementConfirmation.expires_at < now,
            )
            .values(status=ConfirmationStatus.EXPIRED.value, expired_at=now)
            .execution_options(synchronize_session="fetch")
        )
        # Accepted requests whose offer lapsed can be offered terms again
        await self.db.execute(
            update(RentalRequest)
            .where(
                RentalRequest.status == RentalRequestStatus.ACCEPTED.value,
                RentalRequest.agreement_confirmation_id.in_(
                    select(AgreementConfirmation.id).where(
                        AgreementConfirmation.status == ConfirmationStatus.EXPIRED.value
                    )
                ),
            )
            .values(agreement_confirmation_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Expired %d agreement confirmations", count)
        return count

    async def get_stats(self, start_date: datetime | None = None, status: str | None = None) -> dict:
        filters = []
        if start_date is not None:
            filters.append(AgreementConfirmation.created_at >= start_date)
        if status:
            filters.append(AgreementConfirmation.status == status)

        async def _count(*extra) -> int:
            result = await self.db.execute(
                select(func.count(AgreementConfirmation.id)).where(*filters, *extra)
            )
            return result.scalar_one()

        total = await _count()
        confirmed = await _count(AgreementConfirmation.status == ConfirmationStatus.CONFIRMED.value)
        # Overdue but not yet swept still counts as expired
        expired = await _count(
            (AgreementConfirmation.status == ConfirmationStatus.EXPIRED.value)
            | (
                (AgreementConfirmation.status == ConfirmationStatus.PENDING.value)
                & (AgreementConfirmation.expires_at < utcnow())
            )
        )
        return {
            "total": total,
            "pending": await _count(AgreementConfirmation.status == ConfirmationStatus.PENDING.value),
            "confirmed": confirmed,
            "rejected": await _count(AgreementConfirmation.status == ConfirmationStatus.REJECTED.value),
            "expired": expired,
            "success_rate": round(confirmed / total * 100, 2) if total else 0.0,
        }

