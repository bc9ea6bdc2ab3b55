"""Deposit payment orchestration over the VNPay gateway.

Flow:
    create_deposit_payment -> tenant pays on VNPay -> handle_gateway_return

A verified success moves the Payment to ``completed`` with a conditional
UPDATE; only the caller whose UPDATE matched runs the post-payment effects:

    a. room assignment            (Payment.room_assigned_at)
    b. confirmation marked paid   (Payment.confirmation_updated_at)
    c. landlord wallet credit     (Payment.wallet_credited_at)
    d. lease sent for e-signature (Payment.contract_dispatched_at)

Each effect commits on its own and sets its marker. A failed effect is
logged and picked up later by reconcile_incomplete_payments; it never
undoes the ones before it.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.domain.enums import (
    ConfirmationPaymentStatus,
    ConfirmationStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
)
from rental_platform.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rental_platform.domain.models import (
    AgreementConfirmation,
    Payment,
    RentalRequest,
    Room,
    User,
    utcnow,
)
from rental_platform.infra.esign_client import ESignClient
from rental_platform.infra.vnpay import (
    SUCCESS_CODE,
    VNPayGateway,
    describe_response_code,
    from_gateway_amount,
    generate_txn_ref,
)
from rental_platform.services import email_service
from rental_platform.services.contract_service import ContractService
from rental_platform.services.wallet_service import WalletService
from rental_platform.services.workflow_state_machine import apply_transition

logger = logging.getLogger(__name__)

ENTITY = "payment"
TXN_PREFIX = "VIE"
AMOUNT_MISMATCH = "amount mismatch"
RECONCILE_BATCH_SIZE = 50


@dataclass
class GatewayOutcome:
    """Result of processing one gateway return, shaped for both redirect and IPN replies."""

    success: bool
    transaction_id: str
    response_code: str
    message: str
    record_id: str | None = None
    replay: bool = False
    requires_refund: bool = False
    effects: dict = field(default_factory=dict)


class PaymentService:
    """Creates deposit payments and applies verified gateway results."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: VNPayGateway | None = None,
        esign_client: ESignClient | None = None,
    ):
        self.db = db
        self.gateway = gateway or VNPayGateway()
        self.esign_client = esign_client

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_deposit_payment(
        self,
        confirmation_id: str,
        tenant_id: str,
        payment_method: str = PaymentMethod.VNPAY.value,
        amount: int | None = None,
        ip_addr: str | None = None,
    ) -> dict:
        """Create a pending deposit Payment and, for VNPay, its signed redirect URL.

        Returns:
            Dict with ``payment`` and ``payment_url`` (None for non-gateway methods).
        """
        confirmation = await self.db.get(AgreementConfirmation, confirmation_id)
        if confirmation is None:
            raise NotFoundError("Agreement confirmation not found", context={"confirmation_id": confirmation_id})
        if confirmation.tenant_id != tenant_id:
            raise ForbiddenError("This agreement belongs to another tenant")
        if confirmation.status != ConfirmationStatus.CONFIRMED.value:
            raise InvalidStateError(
                "Agreement must be confirmed before paying the deposit",
                context={"status": confirmation.status},
            )
        if confirmation.payment_status == ConfirmationPaymentStatus.COMPLETED.value:
            raise ConflictError("Deposit already paid", context={"confirmation_id": confirmation_id})

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {payment_method}") from None

        deposit = int((confirmation.agreement_terms or {}).get("deposit") or 0)
        if deposit <= 0:
            raise ValidationError("Agreement has no deposit to pay")
        if amount is not None and int(amount) != deposit:
            raise ValidationError(
                "Amount does not match the agreed deposit",
                context={"amount": amount, "deposit": deposit},
            )

        payment = Payment(
            tenant_id=confirmation.tenant_id,
            landlord_id=confirmation.landlord_id,
            room_id=confirmation.room_id,
            agreement_confirmation_id=confirmation.id,
            amount=deposit,
            payment_type=PaymentType.DEPOSIT.value,
            payment_method=method.value,
            status=PaymentStatus.PENDING.value,
            transaction_id=generate_txn_ref(TXN_PREFIX),
            description=f"Deposit for confirmation {confirmation.id}",
        )
        self.db.add(payment)

        payment_url = None
        if method == PaymentMethod.VNPAY:
            payment_url = self.gateway.build_payment_url(
                txn_ref=payment.transaction_id,
                amount=deposit,
                order_info=f"Thanh toan tien coc cho ma GD:{payment.transaction_id}",
                ip_addr=ip_addr,
            )
            confirmation.payment_status = ConfirmationPaymentStatus.PROCESSING.value

        await self.db.commit()
        logger.info(
            "Deposit payment %s created: confirmation=%s method=%s amount=%s",
            payment.transaction_id, confirmation.id, method.value, deposit,
        )
        return {"payment": payment, "payment_url": payment_url}

    # ------------------------------------------------------------------
    # Gateway return
    # ------------------------------------------------------------------

    async def handle_gateway_return(self, params: dict) -> GatewayOutcome:
        """Verify and apply a VNPay return/IPN. Safe to call any number of times.

        Raises:
            InvalidSignatureError: before anything is read or written.
            NotFoundError: unknown ``vnp_TxnRef``.
        """
        data = self.gateway.verify(params)
        txn_ref = data.get("vnp_TxnRef") or ""
        code = str(data.get("vnp_ResponseCode") or "")

        payment = await self._by_transaction_id(txn_ref)
        if payment is None:
            raise NotFoundError("Transaction not found", context={"transaction_id": txn_ref})

        if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value):
            return self._replay(payment)

        amount_ok = self._amount_matches(data.get("vnp_Amount"), payment.amount)
        if code == SUCCESS_CODE and amount_ok:
            return await self._complete(payment.id, data)

        reason = describe_response_code(code) if code != SUCCESS_CODE else AMOUNT_MISMATCH
        return await self._fail(payment.id, data, code or "99", reason)

    @staticmethod
    def _amount_matches(raw, expected: int) -> bool:
        try:
            return from_gateway_amount(raw) == int(expected)
        except (TypeError, ValueError):
            return False

    def _replay(self, payment: Payment) -> GatewayOutcome:
        success = payment.status == PaymentStatus.COMPLETED.value
        logger.info("Gateway return replayed for %s (status=%s)", payment.transaction_id, payment.status)
        return GatewayOutcome(
            success=success,
            transaction_id=payment.transaction_id,
            response_code=SUCCESS_CODE if success else "02",
            message="Already processed",
            record_id=payment.id,
            replay=True,
            requires_refund=bool(payment.requires_refund),
        )

    async def _complete(self, payment_id: str, data: dict) -> GatewayOutcome:
        payment = await self.db.get(Payment, payment_id)
        values = {
            "external_transaction_id": data.get("vnp_TransactionNo"),
            "gateway_response": data,
            "paid_at": utcnow(),
            "failure_reason": None,
        }

        duplicate = await self._completed_deposit_exists(payment.agreement_confirmation_id, payment.id)
        won = False
        if not duplicate:
            try:
                won = await apply_transition(self.db, Payment, ENTITY, payment_id, PaymentStatus.COMPLETED, **values)
                await self.db.commit()
            except IntegrityError:
                # Another payment for this confirmation completed in between
                await self.db.rollback()
                duplicate = True

        if duplicate:
            won = await apply_transition(
                self.db, Payment, ENTITY, payment_id, PaymentStatus.COMPLETED,
                requires_refund=True, **values,
            )
            await self.db.commit()

        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if not won:
            return self._replay(payment)

        if duplicate:
            logger.error(
                "Payment %s captured for already-paid confirmation %s; flagged for refund",
                payment.transaction_id, payment.agreement_confirmation_id,
            )
            return GatewayOutcome(
                success=True,
                transaction_id=payment.transaction_id,
                response_code=SUCCESS_CODE,
                message="Payment received for an agreement that was already paid; it will be refunded",
                record_id=payment.id,
                requires_refund=True,
            )

        logger.info("Payment %s completed (gateway txn %s)", payment.transaction_id, payment.external_transaction_id)
        effects = await self.run_effects(payment_id)
        await self._send_success_email(payment_id)
        return GatewayOutcome(
            success=True,
            transaction_id=payment.transaction_id,
            response_code=SUCCESS_CODE,
            message=describe_response_code(SUCCESS_CODE),
            record_id=payment.id,
            effects=effects,
        )

    async def _fail(self, payment_id: str, data: dict, code: str, reason: str) -> GatewayOutcome:
        won = await apply_transition(
            self.db,
            Payment,
            ENTITY,
            payment_id,
            PaymentStatus.FAILED,
            gateway_response=data,
            failed_at=utcnow(),
            failure_reason=reason,
        )
        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if won:
            await self.db.execute(
                update(AgreementConfirmation)
                .where(
                    AgreementConfirmation.id == payment.agreement_confirmation_id,
                    AgreementConfirmation.payment_status != ConfirmationPaymentStatus.COMPLETED.value,
                )
                .values(payment_status=ConfirmationPaymentStatus.FAILED.value)
                .execution_options(synchronize_session="fetch")
            )
        await self.db.commit()
        if not won:
            return self._replay(payment)

        logger.warning("Payment %s failed: code=%s reason=%s", payment.transaction_id, code, reason)
        return GatewayOutcome(
            success=False,
            transaction_id=payment.transaction_id,
            response_code=code,
            message=reason,
            record_id=payment.id,
        )

    async def _by_transaction_id(self, transaction_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _completed_deposit_exists(self, confirmation_id: str, exclude_payment_id: str) -> bool:
        result = await self.db.execute(
            select(Payment.id).where(
                Payment.agreement_confirmation_id == confirmation_id,
                Payment.id != exclude_payment_id,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.payment_type == PaymentType.DEPOSIT.value,
                Payment.requires_refund.is_(False),
            )
        )
        return result.first() is not None

    # ------------------------------------------------------------------
    # Post-payment effects
    # ------------------------------------------------------------------

    async def run_effects(self, payment_id: str) -> dict:
        """Run every effect whose marker is still unset, in order.

        Returns:
            Dict of effect name -> True when the effect is done after this call.
        """
        steps = (
            ("room_assigned", "room_assigned_at", self._assign_room),
            ("confirmation_updated", "confirmation_updated_at", self._mark_confirmation_paid),
            ("wallet_credited", "wallet_credited_at", self._credit_wallet),
            ("contract_dispatched", "contract_dispatched_at", self._dispatch_contract),
        )
        outcome = {}
        for name, marker, step in steps:
            payment = await self.db.get(Payment, payment_id, populate_existing=True)
            if getattr(payment, marker) is not None:
                outcome[name] = True
                continue
            try:
                await step(payment)
                outcome[name] = True
            except Exception:
                # Left for reconcile_incomplete_payments
                await self.db.rollback()
                logger.exception("Post-payment effect %s failed for payment %s", name, payment_id)
                outcome[name] = False
        return outcome

    async def _assign_room(self, payment: Payment) -> None:
        payment_id = payment.id
        result = await self.db.execute(
            update(Room)
            .where(
                Room.id == payment.room_id,
                or_(Room.current_tenant_id.is_(None), Room.current_tenant_id == payment.tenant_id),
            )
            .values(current_tenant_id=payment.tenant_id, is_available=False)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise ConflictError("Room is occupied by another tenant", context={"room_id": payment.room_id})
        await self._set_marker(payment_id, "room_assigned_at")
        await self.db.commit()

    async def _mark_confirmation_paid(self, payment: Payment) -> None:
        payment_id = payment.id
        confirmation = await self.db.get(AgreementConfirmation, payment.agreement_confirmation_id)
        now = utcnow()
        await self.db.execute(
            update(AgreementConfirmation)
            .where(AgreementConfirmation.id == payment.agreement_confirmation_id)
            .values(
                payment_status=ConfirmationPaymentStatus.COMPLETED.value,
                payment_id=payment_id,
                paid_at=payment.paid_at or now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if confirmation is not None:
            await self.db.execute(
                update(RentalRequest)
                .where(RentalRequest.id == confirmation.rental_request_id)
                .values(payment_completed_at=payment.paid_at or now)
                .execution_options(synchronize_session="fetch")
            )
        await self._set_marker(payment_id, "confirmation_updated_at")
        await self.db.commit()

    async def _credit_wallet(self, payment: Payment) -> None:
        payment_id = payment.id
        credited = await WalletService(self.db).credit_landlord(payment)
        if not credited:
            await self._set_marker(payment_id, "wallet_credited_at")
            await self.db.commit()

    async def _dispatch_contract(self, payment: Payment) -> None:
        contracts = ContractService(self.db, esign_client=self.esign_client)
        await contracts.dispatch_for_signing(payment.agreement_confirmation_id, payment.id)

    async def _set_marker(self, payment_id: str, marker: str) -> None:
        column = getattr(Payment, marker)
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, column.is_(None))
            .values({marker: utcnow()})
            .execution_options(synchronize_session="fetch")
        )

    async def _send_success_email(self, payment_id: str) -> bool:
        payment = await self.db.get(Payment, payment_id)
        confirmation = await self.db.get(AgreementConfirmation, payment.agreement_confirmation_id)
        tenant = await self.db.get(User, payment.tenant_id)
        landlord = await self.db.get(User, payment.landlord_id)
        room = await self.db.get(Room, payment.room_id)
        terms = (confirmation.agreement_terms if confirmation else None) or {}
        return await email_service.send_payment_success_email(
            tenant.email,
            {
                "tenant_name": tenant.name,
                "transaction_id": payment.transaction_id,
                "amount": payment.amount,
                "room_name": room.display_name if room else "",
                "start_date": terms.get("start_date"),
                "monthly_rent": terms.get("monthly_rent"),
                "landlord_name": landlord.name if landlord else "",
                "landlord_email": landlord.email if landlord else "",
                "landlord_phone": landlord.phone if landlord else None,
            },
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_payment_effects(self, payment_id: str) -> dict:
        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment not found", context={"payment_id": payment_id})
        if payment.status != PaymentStatus.COMPLETED.value or payment.requires_refund:
            raise InvalidStateError(
                "Only completed, non-duplicate payments have effects",
                context={"payment_id": payment_id, "status": payment.status},
            )
        return await self.run_effects(payment_id)

    async def reconcile_incomplete_payments(self) -> int:
        """Re-run missing effects for completed deposits. Returns payments touched."""
        result = await self.db.execute(
            select(Payment.id)
            .where(
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.requires_refund.is_(False),
                or_(
                    Payment.room_assigned_at.is_(None),
                    Payment.confirmation_updated_at.is_(None),
                    Payment.wallet_credited_at.is_(None),
                    Payment.contract_dispatched_at.is_(None),
                ),
            )
            .order_by(Payment.paid_at)
            .limit(RECONCILE_BATCH_SIZE)
        )
        payment_ids = list(result.scalars().all())
        for payment_id in payment_ids:
            outcome = await self.run_effects(payment_id)
            logger.info("Reconciled payment %s: %s", payment_id, outcome)
        return len(payment_ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_for_tenant(self, tenant_id: str) -> list[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.tenant_id == tenant_id).order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_details(self, payment_id: str, user_id: str) -> Payment:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", context={"payment_id": payment_id})
        if user_id not in (payment.tenant_id, payment.landlord_id):
            raise ForbiddenError("Not a party to this payment")
        return payment
