"""HTTP layer: auth, error mapping, VNPay return/IPN and the e-sign webhook.

Each test builds a fresh FastAPI app with the routers under test and the
shared db_session injected through dependency_overrides.
"""

import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from rental_platform.app.main import workflow_error_handler
from rental_platform.app.routes.auth import router as auth_router
from rental_platform.app.routes.payments import router as payments_router
from rental_platform.app.routes.rental_requests import router as rental_requests_router
from rental_platform.app.routes.signatures import router as signatures_router
from rental_platform.domain.enums import SignatureStatus
from rental_platform.domain.errors import WorkflowError
from rental_platform.domain.models import AgreementConfirmation, Payment
from rental_platform.infra.database import get_db
from rental_platform.infra.esign_client import get_esign_client
from rental_platform.services.auth_service import create_access_token
from rental_platform.services.payment_service import PaymentService

WEBHOOK_SECRET = "whsec-test"


def _build_app_client(db_session, esign_client=None):
    """Build an HTTPX AsyncClient wired to a test FastAPI app."""
    test_app = FastAPI()
    test_app.add_exception_handler(WorkflowError, workflow_error_handler)
    for router in (auth_router, rental_requests_router, payments_router, signatures_router):
        test_app.include_router(router)

    async def _override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = _override_get_db
    if esign_client is not None:
        test_app.dependency_overrides[get_esign_client] = lambda: esign_client

    return AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://testserver",
    )


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


async def _pending_payment(db_session, confirmation, esign_client) -> Payment:
    result = await PaymentService(db_session, esign_client=esign_client).create_deposit_payment(
        confirmation.id, confirmation.tenant_id
    )
    return result["payment"]


class TestAuth:

    async def test_signup_login_me(self, db_session):
        async with _build_app_client(db_session) as client:
            signup = await client.post(
                "/api/auth/signup",
                json={"email": "An@Example.com", "password": "secret123", "name": "An", "role": "landlord"},
            )
            assert signup.status_code == 200
            assert signup.json()["user"]["email"] == "an@example.com"

            login = await client.post(
                "/api/auth/login", json={"email": "an@example.com", "password": "secret123"}
            )
            assert login.status_code == 200
            token = login.json()["access_token"]

            me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
            assert me.status_code == 200
            assert me.json()["role"] == "landlord"

    async def test_duplicate_signup(self, db_session):
        body = {"email": "dup@example.com", "password": "secret123", "name": "Dup"}
        async with _build_app_client(db_session) as client:
            assert (await client.post("/api/auth/signup", json=body)).status_code == 200
            assert (await client.post("/api/auth/signup", json=body)).status_code == 400

    async def test_wrong_password(self, db_session):
        body = {"email": "pw@example.com", "password": "secret123", "name": "Pw"}
        async with _build_app_client(db_session) as client:
            await client.post("/api/auth/signup", json=body)
            resp = await client.post(
                "/api/auth/login", json={"email": "pw@example.com", "password": "wrong-one"}
            )
            assert resp.status_code == 401

    async def test_missing_token(self, db_session):
        async with _build_app_client(db_session) as client:
            assert (await client.get("/api/auth/me")).status_code == 401

    async def test_wrong_role(self, db_session, make_user, make_room):
        landlord = await make_user(role="landlord")
        room = await make_room()
        async with _build_app_client(db_session) as client:
            resp = await client.post(
                "/api/rental-requests",
                json={"room_id": room.id, "proposed_start_date": "2030-01-01"},
                headers=_auth(landlord),
            )
            assert resp.status_code == 403


class TestErrorMapping:

    async def test_not_found(self, db_session, make_user):
        tenant = await make_user()
        async with _build_app_client(db_session) as client:
            resp = await client.get("/api/rental-requests/missing", headers=_auth(tenant))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_invalid_state(self, db_session, make_rental_request):
        request = await make_rental_request()
        tenant_headers = {"Authorization": f"Bearer {create_access_token(request.tenant_id, 'tenant')}"}
        async with _build_app_client(db_session) as client:
            first = await client.post(f"/api/rental-requests/{request.id}/withdraw", headers=tenant_headers)
            second = await client.post(f"/api/rental-requests/{request.id}/withdraw", headers=tenant_headers)
        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "invalid_state"

    async def test_create_and_list(self, db_session, make_user, make_room):
        tenant = await make_user()
        room = await make_room()
        async with _build_app_client(db_session) as client:
            created = await client.post(
                "/api/rental-requests",
                json={"room_id": room.id, "proposed_start_date": "2030-01-01", "guest_count": 2},
                headers=_auth(tenant),
            )
            mine = await client.get("/api/rental-requests/mine", headers=_auth(tenant))
        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        assert [r["id"] for r in mine.json()] == [created.json()["id"]]


class TestOfferAfterAccept:

    async def test_accept_then_offer_once(self, db_session, make_rental_request, sent_emails):
        request = await make_rental_request()
        landlord_headers = {"Authorization": f"Bearer {create_access_token(request.landlord_id, 'landlord')}"}
        base = f"/api/rental-requests/{request.id}"
        async with _build_app_client(db_session) as client:
            accepted = await client.post(f"{base}/accept", json={}, headers=landlord_headers)
            offered = await client.post(
                f"{base}/offer", json={"agreement_terms": {"deposit": 3_000_000}}, headers=landlord_headers
            )
            again = await client.post(f"{base}/offer", json={}, headers=landlord_headers)

        assert accepted.status_code == 200
        assert accepted.json()["agreement_confirmation_id"] is None
        assert offered.status_code == 200
        body = offered.json()
        assert body["rental_request"]["agreement_confirmation_id"] == body["confirmation"]["id"]
        assert body["confirmation"]["agreement_terms"]["deposit"] == 3_000_000
        assert again.status_code == 409
        assert again.json()["error"] == "conflict"

    async def test_tenant_cannot_offer(self, db_session, make_rental_request):
        request = await make_rental_request()
        tenant_headers = {"Authorization": f"Bearer {create_access_token(request.tenant_id, 'tenant')}"}
        async with _build_app_client(db_session) as client:
            resp = await client.post(f"/api/rental-requests/{request.id}/offer", json={}, headers=tenant_headers)
        assert resp.status_code == 403


class TestVNPayReturn:

    async def test_success_redirects_to_frontend(
        self, db_session, confirmed_agreement, esign_client, signed_params, test_settings
    ):
        confirmation = await confirmed_agreement()
        payment = await _pending_payment(db_session, confirmation, esign_client)

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get(
                "/api/payments/vnpay/return",
                params=signed_params(payment.transaction_id, payment.amount),
            )

        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert resp.headers["location"].startswith(test_settings.frontend_url)
        assert location.path == "/payment/success"
        assert parse_qs(location.query)["transactionId"] == [payment.transaction_id]

    async def test_tampered_redirects_with_code_97(
        self, db_session, confirmed_agreement, esign_client, signed_params
    ):
        confirmation = await confirmed_agreement()
        payment = await _pending_payment(db_session, confirmation, esign_client)
        params = signed_params(payment.transaction_id, payment.amount)
        params["vnp_Amount"] = "100"

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get("/api/payments/vnpay/return", params=params)

        location = urlparse(resp.headers["location"])
        assert location.path == "/payment/failure"
        assert parse_qs(location.query)["code"] == ["97"]

    async def test_declined_redirects_with_gateway_code(
        self, db_session, confirmed_agreement, esign_client, signed_params
    ):
        confirmation = await confirmed_agreement()
        payment = await _pending_payment(db_session, confirmation, esign_client)

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get(
                "/api/payments/vnpay/return",
                params=signed_params(payment.transaction_id, payment.amount, code="24"),
            )

        assert parse_qs(urlparse(resp.headers["location"]).query)["code"] == ["24"]


class TestVNPayIPN:

    async def test_confirm_then_replay(self, db_session, confirmed_agreement, esign_client, signed_params):
        confirmation = await confirmed_agreement()
        payment = await _pending_payment(db_session, confirmation, esign_client)
        params = signed_params(payment.transaction_id, payment.amount)

        async with _build_app_client(db_session, esign_client) as client:
            first = await client.get("/api/payments/vnpay/ipn", params=params)
            second = await client.get("/api/payments/vnpay/ipn", params=params)

        assert first.json() == {"RspCode": "00", "Message": "Confirm Success"}
        assert second.json()["RspCode"] == "02"

    async def test_unknown_order(self, db_session, esign_client, signed_params):
        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get("/api/payments/vnpay/ipn", params=signed_params("NOPE", 1000))
        assert resp.json()["RspCode"] == "01"

    async def test_bad_signature(self, db_session, esign_client, signed_params):
        params = signed_params("NOPE", 1000)
        params["vnp_SecureHash"] = "00" * 64
        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get("/api/payments/vnpay/ipn", params=params)
        assert resp.json()["RspCode"] == "97"

    async def test_amount_mismatch(self, db_session, confirmed_agreement, esign_client, signed_params):
        confirmation = await confirmed_agreement()
        payment = await _pending_payment(db_session, confirmation, esign_client)

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.get(
                "/api/payments/vnpay/ipn", params=signed_params(payment.transaction_id, payment.amount - 1)
            )

        assert resp.json()["RspCode"] == "04"


def _webhook_body(document_id: str, event_type: str) -> bytes:
    return json.dumps({"event": {"eventType": event_type}, "data": {"documentId": document_id}}).encode()


def _boldsign_header(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: str = "1767225600") -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp}, s0={digest}"


class TestSignatureWebhook:

    @pytest.fixture
    async def sent_for_signature(self, paid_agreement):
        return await paid_agreement()

    async def test_completed_creates_tenancy(self, db_session, esign_client, sent_for_signature):
        body = _webhook_body(sent_for_signature.signature_document_id, "Completed")

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post(
                "/api/signatures/webhook", content=body, headers={"Content-Type": "application/json"}
            )

        assert resp.status_code == 200
        assert resp.json()["processed"] is True
        confirmation = await db_session.get(
            AgreementConfirmation, sent_for_signature.id, populate_existing=True
        )
        assert confirmation.signature_status == SignatureStatus.COMPLETED.value

    async def test_unknown_document_still_200(self, db_session, esign_client):
        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post("/api/signatures/webhook", content=_webhook_body("doc-missing", "Completed"))

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "processed": False, "error": "not_found"}

    async def test_verification_event(self, db_session, esign_client):
        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post(
                "/api/signatures/webhook", content=json.dumps({"event": {"eventType": "Verification"}})
            )
        assert resp.json() == {"ok": True, "processed": False}

    async def test_unreadable_payload(self, db_session, esign_client):
        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post("/api/signatures/webhook", content=b"not json")
        assert resp.status_code == 200
        assert resp.json()["error"] == "invalid_payload"

    async def test_signed_request_accepted(
        self, db_session, esign_client, sent_for_signature, monkeypatch, test_settings
    ):
        monkeypatch.setattr(test_settings, "boldsign_webhook_secret", WEBHOOK_SECRET)
        body = _webhook_body(sent_for_signature.signature_document_id, "Viewed")

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post(
                "/api/signatures/webhook",
                content=body,
                headers={"X-BoldSign-Signature": _boldsign_header(body)},
            )

        assert resp.status_code == 200
        assert resp.json()["processed"] is True

    @pytest.mark.parametrize("header", ["", "t=1767225600, s0=deadbeef"])
    async def test_bad_signature_rejected(self, db_session, esign_client, monkeypatch, test_settings, header):
        monkeypatch.setattr(test_settings, "boldsign_webhook_secret", WEBHOOK_SECRET)

        async with _build_app_client(db_session, esign_client) as client:
            resp = await client.post(
                "/api/signatures/webhook",
                content=_webhook_body("doc-1", "Completed"),
                headers={"X-BoldSign-Signature": header},
            )

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_signature"
