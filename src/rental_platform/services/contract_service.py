"""Contract signing: lease dispatch, signature webhook and tenancy lifecycle.

Once a deposit is paid the lease PDF is rendered and sent to the tenant for
e-signature. The provider's ``Completed`` webhook is what finally creates the
TenancyAgreement; ``Declined`` leaves the paid confirmation without a lease
and needs manual follow-up.
"""

import asyncio
import logging
from datetime import date
from pathlib import Path

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental_platform.app.config import get_settings
from rental_platform.domain.enums import (
    PaymentStatus,
    PaymentType,
    SignatureEvent,
    SignatureStatus,
    TenancyStatus,
)
from rental_platform.domain.errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from rental_platform.domain.models import (
    AgreementConfirmation,
    Payment,
    Room,
    TenancyAgreement,
    utcnow,
)
from rental_platform.infra.esign_client import ESignClient, Signer
from rental_platform.services import email_service
from rental_platform.services.contract_renderer import build_lease_context, render_lease_pdf
from rental_platform.services.workflow_state_machine import require_transition

logger = logging.getLogger(__name__)


def _parse_date(value) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class ContractService:
    """Lease signing round trip and tenancy agreement management."""

    def __init__(self, db: AsyncSession, esign_client: ESignClient | None = None):
        self.db = db
        self.settings = get_settings()
        self.esign = esign_client or ESignClient()

    async def _load_confirmation(self, **criteria) -> AgreementConfirmation | None:
        stmt = select(AgreementConfirmation).options(
            selectinload(AgreementConfirmation.tenant),
            selectinload(AgreementConfirmation.landlord),
            selectinload(AgreementConfirmation.room).selectinload(Room.accommodation),
        )
        for column, value in criteria.items():
            stmt = stmt.where(getattr(AgreementConfirmation, column) == value)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_for_signing(self, confirmation_id: str, payment_id: str) -> str:
        """Render the lease and send it to the tenant for signature. Commits.

        Returns:
            The provider document id.

        Raises:
            ExternalServiceError: rendering failed or the provider kept
                failing; the confirmation is left with signature_status=failed.
        """
        confirmation = await self._load_confirmation(id=confirmation_id)
        if confirmation is None:
            raise NotFoundError("Agreement confirmation not found", context={"confirmation_id": confirmation_id})
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", context={"payment_id": payment_id})

        if confirmation.signature_document_id:
            # Already out for signature; only the marker is missing
            await self._mark_dispatched(payment_id)
            return confirmation.signature_document_id

        try:
            context = build_lease_context(confirmation, payment)
            pdf_bytes = await asyncio.to_thread(render_lease_pdf, context)
            document_id = await self.esign.send_document(
                title=f"Lease agreement {context['contract_id']}",
                pdf_bytes=pdf_bytes,
                signer=Signer(name=confirmation.tenant.name, email=confirmation.tenant.email),
                file_name=f"lease_{confirmation.id}.pdf",
            )
        except Exception as exc:
            await self.db.execute(
                update(AgreementConfirmation)
                .where(AgreementConfirmation.id == confirmation_id)
                .values(signature_status=SignatureStatus.FAILED.value)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.commit()
            logger.error("Lease dispatch failed for confirmation %s: %s", confirmation_id, exc)
            if isinstance(exc, ExternalServiceError):
                raise
            raise ExternalServiceError(
                f"Could not prepare lease for signing: {exc}",
                context={"confirmation_id": confirmation_id},
            ) from exc

        await self.db.execute(
            update(AgreementConfirmation)
            .where(AgreementConfirmation.id == confirmation_id)
            .values(
                signature_document_id=document_id,
                signature_status=SignatureStatus.SENT.value,
                signature_sent_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        await self._mark_dispatched(payment_id)
        logger.info("Lease for confirmation %s sent for signature: document=%s", confirmation_id, document_id)
        return document_id

    async def _mark_dispatched(self, payment_id: str) -> None:
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.contract_dispatched_at.is_(None))
            .values(contract_dispatched_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Signature webhook
    # ------------------------------------------------------------------

    async def handle_signature_callback(self, document_id: str, event_type: str) -> dict:
        """Apply an e-signature provider event to the matching confirmation.

        Returns:
            Dict with ``confirmation_id``, ``signature_status`` and, for a
            completed signature, ``tenancy_agreement_id``.
        """
        confirmation = await self._load_confirmation(signature_document_id=document_id)
        if confirmation is None:
            raise NotFoundError("No agreement for this document", context={"document_id": document_id})

        if event_type == SignatureEvent.COMPLETED.value:
            return await self._complete_signature(confirmation)

        values = {"last_signature_event": event_type}
        if event_type == SignatureEvent.DECLINED.value:
            values["signature_status"] = SignatureStatus.DECLINED.value
            logger.warning(
                "Tenant declined lease for confirmation %s (document %s); deposit is paid, manual follow-up needed",
                confirmation.id, document_id,
            )
        elif (
            event_type == SignatureEvent.VIEWED.value
            and confirmation.signature_status == SignatureStatus.SENT.value
        ):
            values["signature_status"] = SignatureStatus.VIEWED.value
        else:
            logger.info("Signature event %s recorded for confirmation %s", event_type, confirmation.id)

        await self.db.execute(
            update(AgreementConfirmation)
            .where(
                AgreementConfirmation.id == confirmation.id,
                AgreementConfirmation.signature_status != SignatureStatus.COMPLETED.value,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        confirmation = await self._load_confirmation(id=confirmation.id)
        return {
            "confirmation_id": confirmation.id,
            "signature_status": confirmation.signature_status,
            "tenancy_agreement_id": confirmation.tenancy_agreement_id,
        }

    async def _store_signed_document(self, confirmation: AgreementConfirmation) -> str | None:
        try:
            pdf_bytes = await self.esign.download_document(confirmation.signature_document_id)
        except ExternalServiceError as exc:
            logger.error("Signed lease download failed for confirmation %s: %s", confirmation.id, exc)
            return None

        target_dir = Path(self.settings.contracts_dir)
        path = target_dir / f"lease_{confirmation.id}_signed.pdf"

        def _write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(pdf_bytes)

        await asyncio.to_thread(_write)
        return str(path)

    async def _complete_signature(self, confirmation: AgreementConfirmation) -> dict:
        if confirmation.tenancy_agreement_id:
            logger.info("Signature already completed for confirmation %s", confirmation.id)
            return {
                "confirmation_id": confirmation.id,
                "signature_status": confirmation.signature_status,
                "tenancy_agreement_id": confirmation.tenancy_agreement_id,
            }
        payment_id = await self._deposit_payment_id(confirmation)
        if payment_id is None:
            raise ConflictError(
                "Lease signed without a completed deposit",
                context={"confirmation_id": confirmation.id},
            )

        # Plain values; a rollback inside agreement creation expires the ORM objects
        confirmation_id = confirmation.id
        room_id = confirmation.room_id
        tenant_id = confirmation.tenant_id
        terms = dict(confirmation.agreement_terms or {})
        email_data = {
            "tenant_name": confirmation.tenant.name,
            "room_name": confirmation.room.display_name,
            "start_date": terms.get("start_date"),
            "end_date": terms.get("end_date"),
            "monthly_rent": terms.get("monthly_rent"),
        }
        tenant_email = confirmation.tenant.email

        signed_path = await self._store_signed_document(confirmation)
        agreement = await self._create_tenancy_agreement(confirmation, payment_id, signed_path)
        agreement_id = agreement.id

        await self.db.execute(
            update(AgreementConfirmation)
            .where(AgreementConfirmation.id == confirmation_id)
            .values(
                signature_status=SignatureStatus.COMPLETED.value,
                last_signature_event=SignatureEvent.COMPLETED.value,
                signed_at=utcnow(),
                signed_document_path=signed_path,
                tenancy_agreement_id=agreement_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        # Payment already assigned the room; reassert it in case that effect is still pending
        await self.db.execute(
            update(Room)
            .where(
                Room.id == room_id,
                or_(Room.current_tenant_id.is_(None), Room.current_tenant_id == tenant_id),
            )
            .values(current_tenant_id=tenant_id, is_available=False)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info(
            "Lease signed for confirmation %s: tenancy agreement %s active",
            confirmation_id, agreement_id,
        )

        await email_service.send_tenancy_active_email(tenant_email, email_data)
        return {
            "confirmation_id": confirmation_id,
            "signature_status": SignatureStatus.COMPLETED.value,
            "tenancy_agreement_id": agreement_id,
        }

    async def _deposit_payment_id(self, confirmation: AgreementConfirmation) -> str | None:
        """Deposit behind this lease, even when the confirmation-paid effect has not run yet."""
        if confirmation.payment_id:
            return confirmation.payment_id
        result = await self.db.execute(
            select(Payment.id)
            .where(
                Payment.agreement_confirmation_id == confirmation.id,
                Payment.payment_type == PaymentType.DEPOSIT.value,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.requires_refund.is_(False),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _create_tenancy_agreement(
        self, confirmation: AgreementConfirmation, payment_id: str, signed_path: str | None
    ) -> TenancyAgreement:
        """Insert the agreement, or return the one already created for this confirmation."""
        existing = await self._agreement_for_confirmation(confirmation.id)
        if existing is not None:
            return existing

        terms = confirmation.agreement_terms or {}
        agreement = TenancyAgreement(
            tenant_id=confirmation.tenant_id,
            landlord_id=confirmation.landlord_id,
            room_id=confirmation.room_id,
            accommodation_id=confirmation.room.accommodation_id,
            agreement_confirmation_id=confirmation.id,
            payment_id=payment_id,
            start_date=_parse_date(terms.get("start_date")),
            end_date=_parse_date(terms.get("end_date")),
            monthly_rent=terms.get("monthly_rent", 0),
            deposit=terms.get("deposit", 0),
            utility_rates=terms.get("utility_rates"),
            additional_fees=terms.get("additional_fees"),
            notes=terms.get("notes"),
            signed_document_path=signed_path,
            status=TenancyStatus.ACTIVE.value,
        )
        confirmation_id = confirmation.id
        room_id = confirmation.room_id
        self.db.add(agreement)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._agreement_for_confirmation(confirmation_id)
            if existing is not None:
                return existing
            raise ConflictError(
                "Room already has an active tenancy",
                context={"room_id": room_id, "confirmation_id": confirmation_id},
            )
        return agreement

    async def _agreement_for_confirmation(self, confirmation_id: str) -> TenancyAgreement | None:
        result = await self.db.execute(
            select(TenancyAgreement).where(TenancyAgreement.agreement_confirmation_id == confirmation_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Tenancy lifecycle
    # ------------------------------------------------------------------

    async def get_tenancy(self, agreement_id: str, user_id: str | None = None) -> TenancyAgreement:
        agreement = await self.db.get(TenancyAgreement, agreement_id)
        if agreement is None:
            raise NotFoundError("Tenancy agreement not found", context={"agreement_id": agreement_id})
        if user_id is not None and user_id not in (agreement.tenant_id, agreement.landlord_id):
            raise ForbiddenError("Not a party to this tenancy agreement")
        return agreement

    async def list_for_user(self, user_id: str) -> list[TenancyAgreement]:
        result = await self.db.execute(
            select(TenancyAgreement)
            .where(or_(TenancyAgreement.tenant_id == user_id, TenancyAgreement.landlord_id == user_id))
            .order_by(TenancyAgreement.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_active_tenancy_for_room(self, room_id: str) -> TenancyAgreement:
        result = await self.db.execute(
            select(TenancyAgreement).where(
                TenancyAgreement.room_id == room_id,
                TenancyAgreement.status == TenancyStatus.ACTIVE.value,
            )
        )
        agreement = result.scalar_one_or_none()
        if agreement is None:
            raise NotFoundError("No active tenancy for this room", context={"room_id": room_id})
        return agreement

    async def end_tenancy(
        self,
        agreement_id: str,
        landlord_id: str,
        status: str = TenancyStatus.ENDED.value,
        reason: str | None = None,
    ) -> TenancyAgreement:
        """End or terminate an active tenancy and free the room."""
        if status not in (TenancyStatus.ENDED.value, TenancyStatus.TERMINATED.value):
            raise ValidationError("status must be 'ended' or 'terminated'")

        agreement = await self.get_tenancy(agreement_id)
        if agreement.landlord_id != landlord_id:
            raise ForbiddenError("Only the landlord can end this tenancy")

        await require_transition(
            self.db,
            TenancyAgreement,
            "tenancy_agreement",
            agreement_id,
            status,
            ended_at=utcnow(),
            termination_reason=reason,
        )
        await self.db.execute(
            update(Room)
            .where(Room.id == agreement.room_id, Room.current_tenant_id == agreement.tenant_id)
            .values(current_tenant_id=None, is_available=True)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info("Tenancy %s %s by landlord %s", agreement_id, status, landlord_id)
        return await self.db.get(TenancyAgreement, agreement_id, populate_existing=True)
