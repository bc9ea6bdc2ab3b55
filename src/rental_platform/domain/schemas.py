"""Pydantic v2 schemas for API request/response validation."""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Schema for creating a new user."""

    email: str
    password: str = Field(min_length=6)
    name: str
    role: Literal["tenant", "landlord"] = "tenant"
    phone: str | None = None


class UserLogin(BaseModel):
    """Schema for user login."""

    email: str
    password: str


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    phone: str | None = None
    is_active: bool
    wallet_balance: int = 0


class TokenResponse(BaseModel):
    """Schema for JWT token responses."""

    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ---------------------------------------------------------------------------
# Rental requests
# ---------------------------------------------------------------------------


class RentalRequestCreate(BaseModel):
    room_id: str
    proposed_start_date: date
    proposed_end_date: date | None = None
    proposed_rent: int | None = Field(default=None, ge=0)
    guest_count: int = Field(default=1, ge=1)
    message: str | None = Field(default=None, max_length=1000)


class RentalRequestRespond(BaseModel):
    response_message: str | None = Field(default=None, max_length=1000)


class AgreementTermsInput(BaseModel):
    """Terms the landlord offers; omitted fields fall back to the request/room."""

    start_date: date | None = None
    end_date: date | None = None
    monthly_rent: int | None = Field(default=None, ge=0)
    deposit: int | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=2000)


class AcceptWithOfferRequest(BaseModel):
    response_message: str | None = Field(default=None, max_length=1000)
    agreement_terms: AgreementTermsInput = Field(default_factory=AgreementTermsInput)


class OfferTermsRequest(BaseModel):
    agreement_terms: AgreementTermsInput = Field(default_factory=AgreementTermsInput)


class RentalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    room_id: str
    accommodation_id: str
    landlord_id: str
    message: str | None = None
    proposed_start_date: date
    proposed_end_date: date | None = None
    proposed_rent: int | None = None
    guest_count: int
    status: str
    response_message: str | None = None
    responded_at: datetime | None = None
    accepted_at: datetime | None = None
    agreement_confirmation_id: str | None = None
    payment_completed_at: datetime | None = None
    viewed_by_landlord: bool | None = None
    viewed_at: datetime | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Agreement confirmations
# ---------------------------------------------------------------------------


class ConfirmationResponse(BaseModel):
    """Confirmation as seen by its parties. The token is never echoed back."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    rental_request_id: str
    tenant_id: str
    landlord_id: str
    room_id: str
    agreement_terms: dict
    status: str
    payment_status: str
    signature_status: str
    expires_at: datetime
    confirmed_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    expired_at: datetime | None = None
    payment_id: str | None = None
    paid_at: datetime | None = None
    signed_at: datetime | None = None
    tenancy_agreement_id: str | None = None
    created_at: datetime | None = None


class OfferResponse(BaseModel):
    rental_request: RentalRequestResponse
    confirmation: ConfirmationResponse
    email_sent: bool


class ConfirmationPreview(ConfirmationResponse):
    tenant_name: str
    landlord_name: str
    landlord_email: str
    landlord_phone: str | None = None
    room_name: str
    accommodation_name: str
    address: str | None = None


class ConfirmationReject(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class ConfirmationStats(BaseModel):
    total: int
    pending: int
    confirmed: int
    rejected: int
    expired: int
    success_rate: float


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class DepositPaymentCreate(BaseModel):
    confirmation_id: str
    payment_method: Literal["vnpay", "momo", "zalopay", "bank_transfer", "cash"] = "vnpay"
    amount: int | None = Field(default=None, gt=0)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    landlord_id: str
    room_id: str
    agreement_confirmation_id: str
    amount: int
    payment_type: str
    payment_method: str
    status: str
    transaction_id: str
    external_transaction_id: str | None = None
    description: str | None = None
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    requires_refund: bool = False
    created_at: datetime | None = None


class DepositPaymentResponse(BaseModel):
    payment: PaymentResponse
    payment_url: str | None = None


# ---------------------------------------------------------------------------
# E-signature webhook
# ---------------------------------------------------------------------------


class SignatureWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    eventType: str


class SignatureWebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    documentId: str


class SignatureWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: SignatureWebhookEvent
    data: SignatureWebhookData


# ---------------------------------------------------------------------------
# Tenancy agreements
# ---------------------------------------------------------------------------


class TenancyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    landlord_id: str
    room_id: str
    accommodation_id: str
    agreement_confirmation_id: str
    payment_id: str
    start_date: date
    end_date: date | None = None
    monthly_rent: int
    deposit: int
    utility_rates: dict | None = None
    additional_fees: list | None = None
    notes: str | None = None
    status: str
    ended_at: datetime | None = None
    termination_reason: str | None = None
    created_at: datetime | None = None


class TenancyEnd(BaseModel):
    status: Literal["ended", "terminated"] = "ended"
    reason: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


class BankInfo(BaseModel):
    bank_code: str = Field(min_length=1)
    account_number: str = Field(min_length=1)
    account_name: str = Field(min_length=1)


class WithdrawalCreate(BaseModel):
    amount: int = Field(gt=0)
    request_type: Literal["deposit_refund", "early_termination"]
    reason: str = Field(min_length=1, max_length=1000)
    bank_info: BankInfo


class WithdrawalApprove(BaseModel):
    deduction_amount: int = Field(default=0, ge=0)
    deduction_reason: str | None = Field(default=None, max_length=1000)
    response_note: str | None = Field(default=None, max_length=1000)


class WithdrawalReject(BaseModel):
    response_note: str | None = Field(default=None, max_length=1000)


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    landlord_id: str
    agreement_confirmation_id: str
    payment_id: str
    room_id: str
    amount: int
    request_type: str
    reason: str
    bank_code: str
    account_number: str
    account_name: str
    status: str
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    deduction_amount: int = 0
    deduction_reason: str | None = None
    response_note: str | None = None
    net_amount: int | None = None
    payout_txn_ref: str | None = None
    payout_url: str | None = None
    payout_transaction_no: str | None = None
    payout_response_code: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    amount: int
    status: str
    provider: str | None = None
    external_id: str | None = None
    payment_id: str | None = None
    message: str | None = None
    created_at: datetime | None = None


class WalletResponse(BaseModel):
    balance: int
    transactions: list[WalletTransactionResponse]
