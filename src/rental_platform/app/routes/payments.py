"""Deposit payment routes and the VNPay return/IPN endpoints."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.routes.auth import get_current_user_dep, require_role
from rental_platform.app.routes.common import client_ip, frontend_redirect
from rental_platform.domain.errors import InvalidSignatureError, NotFoundError
from rental_platform.domain.models import User
from rental_platform.domain.schemas import (
    DepositPaymentCreate,
    DepositPaymentResponse,
    PaymentResponse,
)
from rental_platform.infra.database import get_db
from rental_platform.infra.esign_client import ESignClient, get_esign_client
from rental_platform.infra.vnpay import (
    INVALID_SIGNATURE_CODE,
    VNPayGateway,
    get_vnpay_gateway,
)
from rental_platform.services.payment_service import AMOUNT_MISMATCH, PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/deposit", response_model=DepositPaymentResponse, status_code=201)
async def create_deposit_payment(
    data: DepositPaymentCreate,
    request: Request,
    user: User = Depends(require_role("tenant")),
    db: AsyncSession = Depends(get_db),
    gateway: VNPayGateway = Depends(get_vnpay_gateway),
):
    """Start paying the deposit for a confirmed agreement.

    For VNPay the response carries the signed URL the browser should open.
    """
    result = await PaymentService(db, gateway=gateway).create_deposit_payment(
        data.confirmation_id,
        user.id,
        payment_method=data.payment_method,
        amount=data.amount,
        ip_addr=client_ip(request),
    )
    return DepositPaymentResponse(
        payment=PaymentResponse.model_validate(result["payment"]),
        payment_url=result["payment_url"],
    )


@router.get("/vnpay/return")
async def vnpay_return(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: VNPayGateway = Depends(get_vnpay_gateway),
    esign_client: ESignClient = Depends(get_esign_client),
):
    """Browser lands here after VNPay; apply the result, then send it to the frontend."""
    params = dict(request.query_params)
    service = PaymentService(db, gateway=gateway, esign_client=esign_client)
    try:
        outcome = await service.handle_gateway_return(params)
    except InvalidSignatureError:
        logger.warning("VNPay return with invalid signature for %s", params.get("vnp_TxnRef"))
        return frontend_redirect("/payment/failure", code=INVALID_SIGNATURE_CODE)
    except NotFoundError:
        return frontend_redirect("/payment/failure", code="transaction_not_found")
    except Exception:
        logger.exception("Error handling VNPay return for %s", params.get("vnp_TxnRef"))
        return frontend_redirect("/payment/failure", code="server_error")

    if outcome.success:
        return frontend_redirect("/payment/success", transactionId=outcome.transaction_id)
    return frontend_redirect("/payment/failure", code=outcome.response_code)


@router.get("/vnpay/ipn")
async def vnpay_ipn(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: VNPayGateway = Depends(get_vnpay_gateway),
    esign_client: ESignClient = Depends(get_esign_client),
):
    """Server-to-server notification. VNPay expects ``{"RspCode", "Message"}``."""
    params = dict(request.query_params)
    service = PaymentService(db, gateway=gateway, esign_client=esign_client)
    try:
        outcome = await service.handle_gateway_return(params)
    except InvalidSignatureError:
        return {"RspCode": INVALID_SIGNATURE_CODE, "Message": "Invalid signature"}
    except NotFoundError:
        return {"RspCode": "01", "Message": "Order not found"}
    except Exception:
        logger.exception("Error handling VNPay IPN for %s", params.get("vnp_TxnRef"))
        return {"RspCode": "99", "Message": "Unknown error"}

    if outcome.replay:
        return {"RspCode": "02", "Message": "Order already confirmed"}
    if outcome.message == AMOUNT_MISMATCH:
        return {"RspCode": "04", "Message": "Invalid amount"}
    return {"RspCode": "00", "Message": "Confirm Success"}


@router.get("/mine", response_model=list[PaymentResponse])
async def list_my_payments(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).list_for_tenant(user.id)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).get_details(payment_id, user.id)


@router.post("/{payment_id}/reconcile")
async def reconcile_payment(
    payment_id: str,
    user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    esign_client: ESignClient = Depends(get_esign_client),
):
    """Re-run whichever post-payment steps have not finished yet."""
    effects = await PaymentService(db, esign_client=esign_client).reconcile_payment_effects(payment_id)
    return {"payment_id": payment_id, "effects": effects}
