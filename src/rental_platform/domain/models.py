"""SQLAlchemy ORM models for the rental platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, stored as naive UTC
- BigInteger for VND amounts (no fractional currency)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_platform.infra.database import Base


def utcnow() -> datetime:
    """Naive UTC now, matching what SQLite hands back on load."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Users / listings
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user. Landlords carry an internal wallet balance."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False, default="")
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="tenant")  # UserRole
    is_active = Column(Boolean, default=True)
    # Only ever changed through an SQL increment, see wallet_service.
    wallet_balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=func.now())
    last_login_at = Column(DateTime, nullable=True)

    accommodations = relationship("Accommodation", back_populates="owner")


class Accommodation(Base):
    """A building or property owned by a landlord, containing rooms."""

    __tablename__ = "accommodations"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    contact_phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=func.now())

    owner = relationship("User", back_populates="accommodations")
    rooms = relationship("Room", back_populates="accommodation")


class Room(Base):
    """Rentable room. Pricing here is copied into confirmations, never live-linked."""

    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, default=_uuid)
    accommodation_id = Column(String(36), ForeignKey("accommodations.id"), nullable=False, index=True)
    room_number = Column(String(20), nullable=False)
    name = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=False, default=1)
    base_rent = Column(BigInteger, nullable=False, default=0)
    deposit = Column(BigInteger, nullable=False, default=0)
    utility_rates = Column(JSON, nullable=True)  # {"electricity": {...}, "water": {...}}
    additional_fees = Column(JSON, nullable=True)  # [{"name": ..., "amount": ...}]
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    current_tenant_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    accommodation = relationship("Accommodation", back_populates="rooms")

    @property
    def display_name(self) -> str:
        return self.name or f"Phòng {self.room_number}"


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class RentalRequest(Base):
    """Tenant's expressed interest in a room."""

    __tablename__ = "rental_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    accommodation_id = Column(String(36), ForeignKey("accommodations.id"), nullable=False)
    landlord_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    message = Column(String(1000), nullable=True)
    proposed_start_date = Column(Date, nullable=False)
    proposed_end_date = Column(Date, nullable=True)
    proposed_rent = Column(BigInteger, nullable=True)
    guest_count = Column(Integer, nullable=False, default=1)

    status = Column(String(20), nullable=False, default="pending", index=True)  # RentalRequestStatus
    response_message = Column(String(1000), nullable=True)
    responded_at = Column(DateTime, nullable=True)

    # Bookkeeping written as the downstream workflow progresses
    accepted_at = Column(DateTime, nullable=True)
    agreement_confirmation_id = Column(String(36), nullable=True)
    payment_completed_at = Column(DateTime, nullable=True)

    viewed_by_landlord = Column(Boolean, default=False)
    viewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    tenant = relationship("User", foreign_keys=[tenant_id])
    room = relationship("Room")


class AgreementConfirmation(Base):
    """Tenant-confirmable lease terms derived from an accepted rental request."""

    __tablename__ = "agreement_confirmations"

    id = Column(String(36), primary_key=True, default=_uuid)
    rental_request_id = Column(String(36), ForeignKey("rental_requests.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    landlord_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)

    # Capability handle for the unauthenticated preview link
    confirmation_token = Column(String(128), nullable=False, unique=True)

    # Snapshot: start_date, end_date, monthly_rent, deposit, notes, utility_rates, additional_fees
    agreement_terms = Column(JSON, nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # ConfirmationStatus
    confirmed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(1000), nullable=True)
    expired_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    # Payment
    payment_status = Column(String(20), nullable=False, default="pending")  # ConfirmationPaymentStatus
    payment_id = Column(String(36), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Signature
    signature_status = Column(String(20), nullable=False, default="pending")  # SignatureStatus
    last_signature_event = Column(String(50), nullable=True)
    signature_document_id = Column(String(100), nullable=True, unique=True)
    signature_sent_at = Column(DateTime, nullable=True)
    signed_at = Column(DateTime, nullable=True)
    signed_document_path = Column(String(500), nullable=True)

    tenancy_agreement_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    tenant = relationship("User", foreign_keys=[tenant_id])
    landlord = relationship("User", foreign_keys=[landlord_id])
    room = relationship("Room")
    rental_request = relationship("RentalRequest")


class Payment(Base):
    """One attempted or completed money movement tied to a confirmation."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    landlord_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)
    agreement_confirmation_id = Column(
        String(36), ForeignKey("agreement_confirmations.id"), nullable=False, index=True
    )

    amount = Column(BigInteger, nullable=False)
    payment_type = Column(String(20), nullable=False, default="deposit")  # PaymentType
    payment_method = Column(String(20), nullable=False)  # PaymentMethod
    status = Column(String(20), nullable=False, default="pending", index=True)  # PaymentStatus

    # Generated once at creation; correlation id for the gateway round trip
    transaction_id = Column(String(64), nullable=False, unique=True)
    external_transaction_id = Column(String(100), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    description = Column(String(500), nullable=True)

    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    # Money captured for a confirmation that was already paid by another payment
    requires_refund = Column(Boolean, nullable=False, default=False)

    # Post-payment effect markers, each set once by its own idempotent step
    room_assigned_at = Column(DateTime, nullable=True)
    confirmation_updated_at = Column(DateTime, nullable=True)
    wallet_credited_at = Column(DateTime, nullable=True)
    contract_dispatched_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index(
            "uq_completed_deposit_per_confirmation",
            "agreement_confirmation_id",
            unique=True,
            sqlite_where=text(
                "status = 'completed' AND payment_type = 'deposit' AND requires_refund = 0"
            ),
            postgresql_where=text(
                "status = 'completed' AND payment_type = 'deposit' AND requires_refund = false"
            ),
        ),
    )

    confirmation = relationship("AgreementConfirmation")

    @property
    def effects_complete(self) -> bool:
        return all(
            (
                self.room_assigned_at,
                self.confirmation_updated_at,
                self.wallet_credited_at,
                self.contract_dispatched_at,
            )
        )


class TenancyAgreement(Base):
    """The binding lease, created once payment and signature are complete."""

    __tablename__ = "tenancy_agreements"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    landlord_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)
    accommodation_id = Column(String(36), ForeignKey("accommodations.id"), nullable=False)
    agreement_confirmation_id = Column(
        String(36), ForeignKey("agreement_confirmations.id"), nullable=False, unique=True
    )
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    monthly_rent = Column(BigInteger, nullable=False)
    deposit = Column(BigInteger, nullable=False)
    utility_rates = Column(JSON, nullable=True)
    additional_fees = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    signed_document_path = Column(String(500), nullable=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # TenancyStatus
    ended_at = Column(DateTime, nullable=True)
    termination_reason = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index(
            "uq_active_tenancy_per_room",
            "room_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class WithdrawalRequest(Base):
    """Tenant's ask to receive money back through the payout gateway."""

    __tablename__ = "withdrawal_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    landlord_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    agreement_confirmation_id = Column(
        String(36), ForeignKey("agreement_confirmations.id"), nullable=False, index=True
    )
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)

    amount = Column(BigInteger, nullable=False)
    request_type = Column(String(30), nullable=False)  # WithdrawalType
    reason = Column(String(1000), nullable=False)

    # Destination bank account
    bank_code = Column(String(20), nullable=False)
    account_number = Column(String(50), nullable=False)
    account_name = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # WithdrawalStatus

    # Landlord response
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    deduction_amount = Column(BigInteger, nullable=False, default=0)
    deduction_reason = Column(String(1000), nullable=True)
    response_note = Column(String(1000), nullable=True)
    net_amount = Column(BigInteger, nullable=True)

    # Payout tracking
    payout_txn_ref = Column(String(64), nullable=True, unique=True)
    payout_url = Column(Text, nullable=True)
    payout_transaction_no = Column(String(100), nullable=True)
    payout_response_code = Column(String(10), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    tenant = relationship("User", foreign_keys=[tenant_id])
    room = relationship("Room")


class WalletTransaction(Base):
    """Immutable ledger row behind a wallet balance change."""

    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # WalletTransactionType
    amount = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # WalletTransactionStatus
    provider = Column(String(50), nullable=True)
    external_id = Column(String(100), nullable=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True)
    message = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint("payment_id", "type", name="uq_wallet_tx_payment_type"),
    )
