"""Withdrawal (deposit refund) routes and the payout return endpoint."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import get_current_user_dep, require_role
from rental_platform.app.routes.common import client_ip, frontend_redirect
from rental_platform.domain.errors import InvalidSignatureError, NotFoundError
from rental_platform.domain.models import User
from rental_platform.domain.schemas import (
    WithdrawalApprove,
    WithdrawalCreate,
    WithdrawalReject,
    WithdrawalResponse,
)
from rental_platform.infra.database import get_db
from rental_platform.infra.vnpay import VNPayGateway, get_vnpay_gateway
from rental_platform.services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/withdrawals", tags=["withdrawals"])


@router.get("/vnpay/return")
async def payout_return(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: VNPayGateway = Depends(get_vnpay_gateway),
):
    """Payout gateway return; applies the result and redirects to the frontend."""
    params = dict(request.query_params)
    try:
        outcome = await WithdrawalService(db, gateway=gateway).handle_payout_return(params)
    except InvalidSignatureError:
        logger.warning("Payout return with invalid signature for %s", params.get("vnp_TxnRef"))
        return frontend_redirect("/withdrawal/failure", code="invalid_signature")
    except NotFoundError:
        return frontend_redirect("/withdrawal/failure", code="request_not_found")
    except Exception:
        logger.exception("Error handling payout return for %s", params.get("vnp_TxnRef"))
        return frontend_redirect("/withdrawal/failure", code="server_error")

    if outcome.success:
        return frontend_redirect("/withdrawal/success", requestId=outcome.record_id)
    return frontend_redirect("/withdrawal/failure", code=outcome.response_code, requestId=outcome.record_id)


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------


@router.post("/{confirmation_id}", response_model=WithdrawalResponse, status_code=201)
async def create_withdrawal(
    confirmation_id: str,
    data: WithdrawalCreate,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).create_withdrawal_request(
        confirmation_id,
        user.id,
        amount=data.amount,
        request_type=data.request_type,
        reason=data.reason,
        bank_info=data.bank_info.model_dump(),
    )


@router.get("/mine", response_model=list[WithdrawalResponse])
async def list_my_withdrawals(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).list_for_tenant(user.id)


@router.post("/{request_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    request_id: str,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).cancel(request_id, user.id)


# ---------------------------------------------------------------------------
# Landlord
# ---------------------------------------------------------------------------


@router.get("/pending", response_model=list[WithdrawalResponse])
async def list_pending_withdrawals(
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).list_pending_for_landlord(user.id)


@router.post("/{request_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(
    request_id: str,
    data: WithdrawalApprove,
    request: Request,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
    gateway: VNPayGateway = Depends(get_vnpay_gateway),
):
    """Approve (optionally with a deduction) and start the payout."""
    return await WithdrawalService(db, gateway=gateway).approve(
        request_id,
        user.id,
        deduction_amount=data.deduction_amount,
        deduction_reason=data.deduction_reason,
        response_note=data.response_note,
        ip_addr=client_ip(request),
    )


@router.post("/{request_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(
    request_id: str,
    data: WithdrawalReject,
    user: User = Depends(require_role("landlord")),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).reject(request_id, user.id, data.response_note)


@router.get("/status/{txn_ref}")
async def payout_status(
    txn_ref: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await WithdrawalService(db).check_payout_status(txn_ref, user.id)
