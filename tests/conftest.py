"""Shared test infrastructure for the rental platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- sent_emails: captures outbound email instead of calling SendGrid
- esign_client: AsyncMock e-signature provider
- make_user / make_room / make_rental_request: row factories
- confirmed_agreement: a tenant-confirmed agreement ready for payment
- paid_agreement: deposit paid, lease out for signature
- signed_params: factory for correctly signed VNPay callback parameters
"""

import uuid
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from rental_platform.infra.database import Base

import rental_platform.domain.models  # noqa: F401

from rental_platform.app.config import get_settings
from rental_platform.domain.models import (
    Accommodation,
    AgreementConfirmation,
    RentalRequest,
    Room,
    User,
)
from rental_platform.infra.vnpay import sign
from rental_platform.services.agreement_confirmation_service import AgreementConfirmationService
from rental_platform.services.payment_service import PaymentService
from rental_platform.services.rental_request_service import RentalRequestService

TEST_HASH_SECRET = "test-hash-secret"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Deterministic gateway secret, no real e-mail, contracts under tmp_path."""
    settings = get_settings()
    monkeypatch.setattr(settings, "vnpay_hash_secret", TEST_HASH_SECRET)
    monkeypatch.setattr(settings, "vnpay_tmn_code", "TESTTMN")
    monkeypatch.setattr(settings, "sendgrid_api_key", "")
    monkeypatch.setattr(settings, "boldsign_webhook_secret", "")
    monkeypatch.setattr(settings, "contracts_dir", str(tmp_path / "contracts"))
    return settings


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def sent_emails():
    """Capture (kind, to_email) for every email the services try to send."""
    sent = []

    async def _capture(to_email, subject, html_body, kind):
        sent.append((kind, to_email))
        return True

    with patch(
        "rental_platform.services.email_service._deliver",
        new=AsyncMock(side_effect=_capture),
    ):
        yield sent


@pytest.fixture
def esign_client():
    """E-signature client that accepts every document."""
    mock = MagicMock()
    mock.send_document = AsyncMock(return_value="doc-" + uuid.uuid4().hex[:8])
    mock.download_document = AsyncMock(return_value=b"%PDF-1.4 signed")
    return mock


@pytest.fixture(autouse=True)
def fake_lease_pdf():
    """Skip real PDF rendering; the template has its own tests."""
    with patch(
        "rental_platform.services.contract_service.render_lease_pdf",
        return_value=b"%PDF-1.4 lease",
    ) as mock:
        yield mock


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory for User rows.

    Usage:
        landlord = await make_user(role="landlord")
    """
    async def _factory(role: str = "tenant", name: str | None = None, email: str | None = None) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            email=email or f"{role}-{suffix}@test.com",
            name=name or f"Test {role.title()} {suffix}",
            phone="0901234567",
            role=role,
            password_hash="",
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_room(db_session, make_user):
    """Factory for Accommodation + Room. Creates a landlord unless one is given."""
    async def _factory(
        landlord: User | None = None,
        capacity: int = 2,
        base_rent: int = 3_000_000,
        deposit: int = 6_000_000,
        is_available: bool = True,
    ) -> Room:
        landlord = landlord or await make_user(role="landlord")
        accommodation = Accommodation(
            owner_id=landlord.id,
            name="Nha Tro Binh An",
            address="12 Nguyen Trai, Quan 1, TP.HCM",
        )
        db_session.add(accommodation)
        await db_session.flush()

        room = Room(
            accommodation_id=accommodation.id,
            room_number="101",
            capacity=capacity,
            base_rent=base_rent,
            deposit=deposit,
            utility_rates={"electricity": {"type": "per_unit", "price": 3500}},
            additional_fees=[{"name": "Internet", "amount": 100000}],
            is_available=is_available,
        )
        db_session.add(room)
        await db_session.commit()
        return room

    return _factory


@pytest.fixture
def make_rental_request(db_session, make_user, make_room):
    """Factory: a pending RentalRequest with its own tenant and room by default."""
    async def _factory(tenant: User | None = None, room: Room | None = None, **kwargs) -> RentalRequest:
        tenant = tenant or await make_user(role="tenant")
        room = room or await make_room()
        return await RentalRequestService(db_session).create(
            tenant_id=tenant.id,
            room_id=room.id,
            proposed_start_date=kwargs.pop("proposed_start_date", date.today() + timedelta(days=7)),
            **kwargs,
        )

    return _factory


@pytest.fixture
def confirmed_agreement(db_session, make_rental_request):
    """Factory: request accepted with an offer and confirmed by the tenant.

    Returns the AgreementConfirmation (parties and room loaded).
    """
    async def _factory(**request_kwargs):
        request = await make_rental_request(**request_kwargs)
        result = await RentalRequestService(db_session).accept_and_offer(
            request.id, request.landlord_id, {}
        )
        confirmation = result["confirmation"]
        return await AgreementConfirmationService(db_session).confirm(
            confirmation.confirmation_token, request.tenant_id
        )

    return _factory


@pytest.fixture
def paid_agreement(db_session, confirmed_agreement, esign_client, signed_params):
    """Factory: confirmed agreement whose deposit went through and lease is out for signature."""
    async def _factory():
        confirmation = await confirmed_agreement()
        payments = PaymentService(db_session, esign_client=esign_client)
        result = await payments.create_deposit_payment(confirmation.id, confirmation.tenant_id)
        payment = result["payment"]
        await payments.handle_gateway_return(signed_params(payment.transaction_id, payment.amount))
        return await db_session.get(AgreementConfirmation, confirmation.id, populate_existing=True)

    return _factory


# ---------------------------------------------------------------------------
# VNPay callback parameters
# ---------------------------------------------------------------------------

@pytest.fixture
def signed_params():
    """Factory for a VNPay return query, signed with the test secret.

    Usage:
        params = signed_params(payment.transaction_id, payment.amount, code="00")
    """
    def _factory(
        txn_ref: str,
        amount: int,
        code: str = "00",
        transaction_no: str = "14123456",
        gateway_amount: str | None = None,
    ) -> dict:
        params = {
            "vnp_Amount": gateway_amount or str(amount * 100),
            "vnp_BankCode": "NCB",
            "vnp_OrderInfo": f"Thanh toan tien coc cho ma GD:{txn_ref}",
            "vnp_PayDate": "20260101120000",
            "vnp_ResponseCode": code,
            "vnp_TmnCode": "TESTTMN",
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": code,
            "vnp_TxnRef": txn_ref,
        }
        params["vnp_SecureHash"] = sign(params, TEST_HASH_SECRET)
        return params

    return _factory
