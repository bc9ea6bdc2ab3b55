"""Domain enumerations for the rental workflow.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Role of a platform user."""

    TENANT = "tenant"
    LANDLORD = "landlord"
    ADMIN = "admin"


class RentalRequestStatus(str, Enum):
    """Lifecycle of a tenant's request to rent a room."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ConfirmationStatus(str, Enum):
    """Tenant-side status of an agreement confirmation."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SignatureStatus(str, Enum):
    """E-signature progress on an agreement confirmation."""

    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    COMPLETED = "completed"
    DECLINED = "declined"
    FAILED = "failed"


class ConfirmationPaymentStatus(str, Enum):
    """Deposit payment progress as seen from the confirmation."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Status of a single money movement."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """Purpose of a payment."""

    DEPOSIT = "deposit"
    MONTHLY_RENT = "monthly_rent"
    UTILITY = "utility"
    PENALTY = "penalty"
    REFUND = "refund"


class PaymentMethod(str, Enum):
    """How the tenant pays."""

    VNPAY = "vnpay"
    MOMO = "momo"
    ZALOPAY = "zalopay"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


class TenancyStatus(str, Enum):
    """Status of a binding lease."""

    ACTIVE = "active"
    ENDED = "ended"
    TERMINATED = "terminated"


class WithdrawalStatus(str, Enum):
    """Lifecycle of a tenant withdrawal (refund) request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalType(str, Enum):
    """Why the tenant is asking for money back."""

    DEPOSIT_REFUND = "deposit_refund"
    EARLY_TERMINATION = "early_termination"


class WalletTransactionType(str, Enum):
    """Ledger entry type for a user wallet."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    PAYMENT = "payment"


class WalletTransactionStatus(str, Enum):
    """Outcome of a ledger entry."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SignatureEvent(str, Enum):
    """E-signature provider webhook events with business effect."""

    COMPLETED = "Completed"
    DECLINED = "Declined"
    VIEWED = "Viewed"
