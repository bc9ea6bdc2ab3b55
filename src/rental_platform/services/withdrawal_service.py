"""Tenant withdrawal (deposit refund) requests and their VNPay payout.

pending -> approved -> processing -> completed | failed
pending -> rejected | cancelled

Approval commits ``approved`` first and then initiates the payout. If the
payout cannot be initiated the request is put back to ``pending`` so the
landlord can try again.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rental_platform.domain.enums import (
    ConfirmationStatus,
    PaymentStatus,
    WithdrawalStatus,
    WithdrawalType,
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
    User,
    WithdrawalRequest,
    utcnow,
)
from rental_platform.infra.vnpay import (
    SUCCESS_CODE,
    VNPayGateway,
    describe_response_code,
    generate_txn_ref,
)
from rental_platform.services import email_service
from rental_platform.services.payment_service import GatewayOutcome
from rental_platform.services.workflow_state_machine import (
    OPEN_WITHDRAWAL_STATES,
    apply_transition,
    require_transition,
)

logger = logging.getLogger(__name__)

ENTITY = "withdrawal_request"
PAYOUT_PREFIX = "WD"


class WithdrawalService:
    """Withdrawal request lifecycle for tenants and landlords."""

    def __init__(self, db: AsyncSession, gateway: VNPayGateway | None = None):
        self.db = db
        self.gateway = gateway or VNPayGateway()

    async def _get(self, request_id: str) -> WithdrawalRequest:
        request = await self.db.get(WithdrawalRequest, request_id, populate_existing=True)
        if request is None:
            raise NotFoundError("Withdrawal request not found", context={"request_id": request_id})
        return request

    # ------------------------------------------------------------------
    # Tenant side
    # ------------------------------------------------------------------

    async def create_withdrawal_request(
        self,
        confirmation_id: str,
        tenant_id: str,
        amount: int,
        request_type: str,
        reason: str,
        bank_info: dict,
    ) -> WithdrawalRequest:
        confirmation = await self.db.get(AgreementConfirmation, confirmation_id)
        if confirmation is None:
            raise NotFoundError("Agreement confirmation not found", context={"confirmation_id": confirmation_id})
        if confirmation.tenant_id != tenant_id:
            raise ForbiddenError("This agreement belongs to another tenant")
        if confirmation.status != ConfirmationStatus.CONFIRMED.value:
            raise ValidationError("Agreement is not confirmed")

        try:
            kind = WithdrawalType(request_type)
        except ValueError:
            raise ValidationError(f"Unsupported request type: {request_type}") from None
        if not (reason or "").strip():
            raise ValidationError("reason is required")
        missing = [k for k in ("bank_code", "account_number", "account_name") if not (bank_info or {}).get(k)]
        if missing:
            raise ValidationError("Bank details are incomplete", context={"missing": missing})

        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.agreement_confirmation_id == confirmation_id,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.requires_refund.is_(False),
            )
            .limit(1)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise ValidationError("No completed payment for this agreement")

        if amount is None or int(amount) <= 0:
            raise ValidationError("amount must be greater than 0")
        if int(amount) > payment.amount:
            raise ValidationError(
                "amount cannot exceed the paid amount",
                context={"amount": amount, "paid": payment.amount},
            )

        open_request = await self.db.execute(
            select(WithdrawalRequest.id).where(
                WithdrawalRequest.tenant_id == tenant_id,
                WithdrawalRequest.agreement_confirmation_id == confirmation_id,
                WithdrawalRequest.status.in_([s.value for s in OPEN_WITHDRAWAL_STATES]),
            )
        )
        if open_request.first() is not None:
            raise ConflictError("A withdrawal request for this agreement is already in progress")

        request = WithdrawalRequest(
            tenant_id=tenant_id,
            landlord_id=confirmation.landlord_id,
            agreement_confirmation_id=confirmation_id,
            payment_id=payment.id,
            room_id=confirmation.room_id,
            amount=int(amount),
            request_type=kind.value,
            reason=reason.strip(),
            bank_code=bank_info["bank_code"],
            account_number=bank_info["account_number"],
            account_name=bank_info["account_name"],
            status=WithdrawalStatus.PENDING.value,
        )
        self.db.add(request)
        await self.db.commit()
        logger.info(
            "Withdrawal request %s created: tenant=%s confirmation=%s amount=%s",
            request.id, tenant_id, confirmation_id, request.amount,
        )
        return request

    async def cancel(self, request_id: str, tenant_id: str) -> WithdrawalRequest:
        request = await self._get(request_id)
        if request.tenant_id != tenant_id:
            raise ForbiddenError("Only the requesting tenant can cancel")
        await require_transition(self.db, WithdrawalRequest, ENTITY, request_id, WithdrawalStatus.CANCELLED)
        await self.db.commit()
        logger.info("Withdrawal request %s cancelled by tenant", request_id)
        return await self._get(request_id)

    async def list_for_tenant(self, tenant_id: str) -> list[WithdrawalRequest]:
        result = await self.db.execute(
            select(WithdrawalRequest)
            .options(selectinload(WithdrawalRequest.room))
            .where(WithdrawalRequest.tenant_id == tenant_id)
            .order_by(WithdrawalRequest.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Landlord side
    # ------------------------------------------------------------------

    async def list_pending_for_landlord(self, landlord_id: str) -> list[WithdrawalRequest]:
        result = await self.db.execute(
            select(WithdrawalRequest)
            .options(selectinload(WithdrawalRequest.tenant), selectinload(WithdrawalRequest.room))
            .where(
                WithdrawalRequest.landlord_id == landlord_id,
                WithdrawalRequest.status == WithdrawalStatus.PENDING.value,
            )
            .order_by(WithdrawalRequest.created_at.desc())
        )
        return list(result.scalars().all())

    async def approve(
        self,
        request_id: str,
        landlord_id: str,
        deduction_amount: int = 0,
        deduction_reason: str | None = None,
        response_note: str | None = None,
        ip_addr: str | None = None,
    ) -> WithdrawalRequest:
        """Approve with an optional deduction and initiate the payout.

        Raises:
            ValidationError: deduction outside ``0 <= d < amount``.
            ExternalServiceError: payout could not be initiated; the request
                is back in ``pending``.
        """
        request = await self._get(request_id)
        if request.landlord_id != landlord_id:
            raise ForbiddenError("Only the landlord can approve this request")

        deduction = int(deduction_amount or 0)
        if deduction < 0:
            raise ValidationError("deduction_amount cannot be negative")
        if deduction > request.amount:
            raise ValidationError("deduction_amount cannot exceed the requested amount")
        net_amount = request.amount - deduction
        if net_amount <= 0:
            raise ValidationError("Amount after deduction must be greater than 0")

        await require_transition(
            self.db,
            WithdrawalRequest,
            ENTITY,
            request_id,
            WithdrawalStatus.APPROVED,
            approved_at=utcnow(),
            deduction_amount=deduction,
            deduction_reason=deduction_reason,
            response_note=response_note,
            net_amount=net_amount,
        )
        await self.db.commit()
        logger.info("Withdrawal request %s approved: net=%s deduction=%s", request_id, net_amount, deduction)

        try:
            await self._initiate_payout(request_id, ip_addr)
        except Exception as exc:
            await self.db.rollback()
            await apply_transition(
                self.db,
                WithdrawalRequest,
                ENTITY,
                request_id,
                WithdrawalStatus.PENDING,
                approved_at=None,
                net_amount=None,
                payout_txn_ref=None,
                payout_url=None,
            )
            await self.db.commit()
            logger.error("Payout initiation failed for withdrawal %s, back to pending: %s", request_id, exc)
            raise ExternalServiceError(
                f"Could not initiate payout: {exc}",
                context={"request_id": request_id},
            ) from exc

        return await self._get(request_id)

    async def _initiate_payout(self, request_id: str, ip_addr: str | None) -> None:
        request = await self._get(request_id)
        txn_ref = generate_txn_ref(PAYOUT_PREFIX)
        payout_url = self.gateway.build_payout_url(
            txn_ref=txn_ref,
            amount=request.net_amount,
            order_info=f"Hoan tra tien coc cho ma GD: {request.id}",
            bank_code=request.bank_code,
            recipient_name=request.account_name,
            ip_addr=ip_addr,
        )
        await require_transition(
            self.db,
            WithdrawalRequest,
            ENTITY,
            request_id,
            WithdrawalStatus.PROCESSING,
            payout_txn_ref=txn_ref,
            payout_url=payout_url,
            processed_at=utcnow(),
        )
        await self.db.commit()
        logger.info("Payout %s initiated for withdrawal %s", txn_ref, request_id)

    async def reject(
        self, request_id: str, landlord_id: str, response_note: str | None = None
    ) -> WithdrawalRequest:
        request = await self._get(request_id)
        if request.landlord_id != landlord_id:
            raise ForbiddenError("Only the landlord can reject this request")
        await require_transition(
            self.db,
            WithdrawalRequest,
            ENTITY,
            request_id,
            WithdrawalStatus.REJECTED,
            rejected_at=utcnow(),
            response_note=response_note,
        )
        await self.db.commit()
        logger.info("Withdrawal request %s rejected by landlord %s", request_id, landlord_id)
        return await self._get(request_id)

    # ------------------------------------------------------------------
    # Payout gateway
    # ------------------------------------------------------------------

    async def _by_txn_ref(self, txn_ref: str) -> WithdrawalRequest | None:
        result = await self.db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.payout_txn_ref == txn_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def handle_payout_return(self, params: dict) -> GatewayOutcome:
        """Verify and apply a payout return. Replays of a finished request change nothing."""
        data = self.gateway.verify(params)
        txn_ref = data.get("vnp_TxnRef") or ""
        code = str(data.get("vnp_ResponseCode") or "")

        request = await self._by_txn_ref(txn_ref)
        if request is None:
            raise NotFoundError("Withdrawal request not found", context={"txn_ref": txn_ref})

        if request.status != WithdrawalStatus.PROCESSING.value:
            success = request.status == WithdrawalStatus.COMPLETED.value
            return GatewayOutcome(
                success=success,
                transaction_id=txn_ref,
                response_code=request.payout_response_code or code,
                message="Already processed",
                record_id=request.id,
                replay=True,
            )

        now = utcnow()
        if code == SUCCESS_CODE:
            won = await apply_transition(
                self.db,
                WithdrawalRequest,
                ENTITY,
                request.id,
                WithdrawalStatus.COMPLETED,
                payout_transaction_no=data.get("vnp_TransactionNo"),
                payout_response_code=code,
                completed_at=now,
            )
            message = "Withdrawal completed successfully"
        else:
            won = await apply_transition(
                self.db,
                WithdrawalRequest,
                ENTITY,
                request.id,
                WithdrawalStatus.FAILED,
                payout_response_code=code,
                failed_at=now,
                failure_reason=describe_response_code(code),
            )
            message = describe_response_code(code)
        await self.db.commit()

        request = await self._get(request.id)
        if not won:
            return GatewayOutcome(
                success=request.status == WithdrawalStatus.COMPLETED.value,
                transaction_id=txn_ref,
                response_code=request.payout_response_code or code,
                message="Already processed",
                record_id=request.id,
                replay=True,
            )

        if code == SUCCESS_CODE:
            logger.info("Payout %s completed for withdrawal %s", txn_ref, request.id)
            tenant = await self.db.get(User, request.tenant_id)
            if tenant is not None:
                await email_service.send_withdrawal_success_email(
                    tenant.email,
                    {
                        "tenant_name": tenant.name,
                        "amount": request.net_amount,
                        "txn_ref": txn_ref,
                        "transaction_no": request.payout_transaction_no,
                    },
                )
        else:
            logger.warning("Payout %s failed for withdrawal %s: %s", txn_ref, request.id, message)

        return GatewayOutcome(
            success=code == SUCCESS_CODE,
            transaction_id=txn_ref,
            response_code=code,
            message=message,
            record_id=request.id,
        )

    async def check_payout_status(self, txn_ref: str, user_id: str) -> dict:
        request = await self._by_txn_ref(txn_ref)
        if request is None:
            raise NotFoundError("Withdrawal request not found", context={"txn_ref": txn_ref})
        if user_id not in (request.tenant_id, request.landlord_id):
            raise ForbiddenError("Not a party to this withdrawal")
        return {
            "request_id": request.id,
            "status": request.status,
            "amount": request.amount,
            "net_amount": request.net_amount,
            "txn_ref": request.payout_txn_ref,
            "transaction_no": request.payout_transaction_no,
            "response_code": request.payout_response_code,
            "message": describe_response_code(request.payout_response_code)
            if request.payout_response_code
            else None,
            "processed_at": request.processed_at,
            "completed_at": request.completed_at,
            "failed_at": request.failed_at,
        }
