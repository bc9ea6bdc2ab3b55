"""E-signature provider webhook."""

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.app.config import get_settings
from rental_platform.domain.errors import InvalidSignatureError, WorkflowError
from rental_platform.domain.schemas import SignatureWebhook
from rental_platform.infra.database import get_db
from rental_platform.infra.esign_client import ESignClient, get_esign_client
from rental_platform.services.contract_service import ContractService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/signatures", tags=["signatures"])

# Sent once when the webhook URL is registered with the provider
VERIFICATION_EVENT = "Verification"


def _validate_signature(request: Request, body_bytes: bytes) -> None:
    """Validate ``X-BoldSign-Signature: t=<ts>, s0=<hex>`` (HMAC-SHA256 of ``<ts>.<body>``).

    Skipped when boldsign_webhook_secret is not configured (local dev).
    """
    settings = get_settings()
    if not settings.boldsign_webhook_secret:
        return

    header = request.headers.get("x-boldsign-signature", "")
    parts = dict(
        item.strip().split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp, signature = parts.get("t"), parts.get("s0")
    if not timestamp or not signature:
        raise InvalidSignatureError("Missing e-sign webhook signature")

    expected = hmac.new(
        settings.boldsign_webhook_secret.encode(),
        f"{timestamp}.".encode() + body_bytes,
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("Invalid e-sign webhook signature")


@router.post("/webhook")
async def signature_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    esign_client: ESignClient = Depends(get_esign_client),
):
    """Apply a signing event to its confirmation.

    Answers 200 for every correctly signed request, applied or not.
    """
    body_bytes = await request.body()
    _validate_signature(request, body_bytes)

    try:
        body = json.loads(body_bytes or b"{}")
        if (body.get("event") or {}).get("eventType") == VERIFICATION_EVENT:
            return {"ok": True, "processed": False}
        payload = SignatureWebhook.model_validate(body)
    except (ValueError, AttributeError, PydanticValidationError) as e:
        logger.warning("Unreadable e-sign webhook payload: %s", e)
        return {"ok": True, "processed": False, "error": "invalid_payload"}

    event_type = payload.event.eventType
    document_id = payload.data.documentId
    logger.info("E-sign webhook: event=%s document=%s", event_type, document_id)

    try:
        result = await ContractService(db, esign_client=esign_client).handle_signature_callback(
            document_id, event_type
        )
    except WorkflowError as e:
        logger.warning("E-sign webhook for %s not applied: %s", document_id, e.message)
        return {"ok": True, "processed": False, "error": e.kind}

    return {"ok": True, "processed": True, **result}
