"""Landlord wallet crediting.

The balance only moves through ``wallet_balance = wallet_balance + :amount``;
the ledger row is inserted first and its (payment_id, type) unique key makes
a second credit for the same payment fail before the balance is touched.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.domain.enums import WalletTransactionStatus, WalletTransactionType
from rental_platform.domain.errors import NotFoundError
from rental_platform.domain.models import Payment, User, WalletTransaction, utcnow

logger = logging.getLogger(__name__)


class WalletService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def credit_landlord(self, payment: Payment) -> bool:
        """Credit the payment amount to its landlord and mark the payment. Commits.

        The ledger row, the balance increment and ``wallet_credited_at``
        land in one transaction.

        Returns:
            True if this call credited the wallet, False if the payment had
            already been credited.
        """
        payment_id = payment.id
        landlord_id = payment.landlord_id
        amount = payment.amount

        existing = await self.db.execute(
            select(WalletTransaction.id).where(
                WalletTransaction.payment_id == payment_id,
                WalletTransaction.type == WalletTransactionType.DEPOSIT.value,
            )
        )
        if existing.first() is not None:
            logger.info("Wallet already credited for payment %s", payment_id)
            return False

        self.db.add(
            WalletTransaction(
                user_id=landlord_id,
                type=WalletTransactionType.DEPOSIT.value,
                amount=amount,
                status=WalletTransactionStatus.SUCCESS.value,
                provider=payment.payment_method,
                external_id=payment.transaction_id,
                payment_id=payment_id,
                message=f"Deposit for room payment {payment.transaction_id}",
            )
        )
        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent caller inserted the ledger row first
            await self.db.rollback()
            logger.info("Wallet already credited for payment %s", payment_id)
            return False

        result = await self.db.execute(
            update(User)
            .where(User.id == landlord_id)
            .values(wallet_balance=User.wallet_balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise NotFoundError("Landlord not found", context={"landlord_id": landlord_id})

        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.wallet_credited_at.is_(None))
            .values(wallet_credited_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info("Credited %s to landlord %s wallet for payment %s", amount, landlord_id, payment_id)
        return True

    async def get_balance(self, user_id: str) -> int:
        result = await self.db.execute(select(User.wallet_balance).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFoundError("User not found", context={"user_id": user_id})
        return balance

    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
        )
        return list(result.scalars().all())
