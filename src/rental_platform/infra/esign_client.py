"""BoldSign e-signature client.

Endpoints used:
- POST /v1/document/send      upload a PDF with one signer, returns documentId
- GET  /v1/document/download  signed PDF bytes for a documentId

Transient failures (transport errors, 5xx, 429) are retried with a linearly
growing wait; anything else fails immediately.
"""

import logging
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from rental_platform.app.config import get_settings
from rental_platform.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signer:
    name: str
    email: str


@dataclass(frozen=True)
class SignatureField:
    """Where the signer's signature box sits on the document."""

    page: int = 1
    x: int = 360
    y: int = 700
    width: int = 180
    height: int = 50


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code >= 500 or code == 429
    return False


class ESignClient:
    """Thin async wrapper over the BoldSign REST API."""

    def __init__(self):
        self.settings = get_settings()
        self.base_url = self.settings.boldsign_api_url.rstrip("/")

    @property
    def _headers(self) -> dict:
        return {"X-API-KEY": self.settings.boldsign_api_key}

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.esign_max_attempts)),
            wait=wait_incrementing(
                start=self.settings.esign_backoff_seconds,
                increment=self.settings.esign_backoff_seconds,
            ),
            retry=retry_if_exception(_is_transient),
            reraise=False,
        )

    async def send_document(
        self,
        *,
        title: str,
        pdf_bytes: bytes,
        signer: Signer,
        field: SignatureField | None = None,
        file_name: str = "lease.pdf",
    ) -> str:
        """Send a document for signature and return the provider documentId."""
        field = field or SignatureField()
        data = {
            "Title": title,
            "Signers[0][Name]": signer.name,
            "Signers[0][EmailAddress]": signer.email,
            "Signers[0][SignerType]": "Signer",
            "Signers[0][FormFields][0][FieldType]": "Signature",
            "Signers[0][FormFields][0][PageNumber]": str(field.page),
            "Signers[0][FormFields][0][Bounds][X]": str(field.x),
            "Signers[0][FormFields][0][Bounds][Y]": str(field.y),
            "Signers[0][FormFields][0][Bounds][Width]": str(field.width),
            "Signers[0][FormFields][0][Bounds][Height]": str(field.height),
            "Signers[0][FormFields][0][IsRequired]": "true",
        }
        files = {"Files": (file_name, pdf_bytes, "application/pdf")}

        async def _call() -> str:
            async with httpx.AsyncClient(timeout=self.settings.esign_timeout_seconds) as client:
                resp = await client.post(
                    f"{self.base_url}/v1/document/send",
                    headers=self._headers,
                    data=data,
                    files=files,
                )
                resp.raise_for_status()
                body = resp.json()
            document_id = body.get("documentId")
            if not document_id:
                raise ExternalServiceError("E-signature provider returned no documentId", context={"body": body})
            return document_id

        try:
            async for attempt in self._retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying e-sign send for %r (attempt %d)",
                            title, attempt.retry_state.attempt_number,
                        )
                    return await _call()
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error("E-sign send failed after retries for %r: %s", title, cause)
            raise ExternalServiceError(
                f"E-signature provider unavailable: {cause}",
                context={"title": title},
            ) from cause
        except httpx.HTTPError as exc:
            logger.error("E-sign send rejected for %r: %s", title, exc)
            raise ExternalServiceError(f"E-signature provider rejected document: {exc}") from exc

    async def download_document(self, document_id: str) -> bytes:
        """Download the signed PDF."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with httpx.AsyncClient(timeout=self.settings.esign_timeout_seconds) as client:
                        resp = await client.get(
                            f"{self.base_url}/v1/document/download",
                            headers=self._headers,
                            params={"documentId": document_id},
                        )
                        resp.raise_for_status()
                        return resp.content
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.error("E-sign download failed for %s: %s", document_id, cause)
            raise ExternalServiceError(
                f"Could not download signed document: {cause}",
                context={"document_id": document_id},
            ) from cause
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Could not download signed document: {exc}") from exc


def get_esign_client() -> ESignClient:
    """FastAPI dependency."""
    return ESignClient()
