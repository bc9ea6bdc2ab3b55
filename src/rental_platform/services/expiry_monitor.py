"""Background sweep for expired confirmations and unfinished payment effects."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rental_platform.services.agreement_confirmation_service import AgreementConfirmationService
from rental_platform.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


async def run_monitor_cycle(db: AsyncSession) -> dict:
    """One pass: expire overdue confirmations, then reconcile completed payments."""
    expired = await AgreementConfirmationService(db).expire_old_confirmations()
    reconciled = await PaymentService(db).reconcile_incomplete_payments()
    if expired or reconciled:
        logger.info("Monitor: expired %d confirmations, reconciled %d payments", expired, reconciled)
    return {"expired_confirmations": expired, "reconciled_payments": reconciled}


async def monitor_loop(session_factory: async_sessionmaker, interval_minutes: int):
    """Run the monitor cycle forever, every ``interval_minutes``."""
    while True:
        try:
            async with session_factory() as db:
                await run_monitor_cycle(db)
        except Exception as e:
            logger.error("Expiry monitor error: %s", e)
        await asyncio.sleep(interval_minutes * 60)
