"""VNPay signing codec for payment and payout round trips.

Outbound: parameters are sorted by key, values are URL-encoded the way
JavaScript's encodeURIComponent does (spaces as '+'), joined as ``k=v&...``
and signed with HMAC-SHA512 over that canonical string.

Inbound: the gateway echoes the parameter set plus ``vnp_SecureHash``; the
hash is removed, the rest is re-canonicalised and compared in constant time.
"""

import hashlib
import hmac
import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import quote_plus

from rental_platform.app.config import get_settings
from rental_platform.domain.errors import InvalidSignatureError

logger = logging.getLogger(__name__)

VNPAY_VERSION = "2.1.0"
SUCCESS_CODE = "00"
# Returned to the gateway/browser when a callback fails signature checks
INVALID_SIGNATURE_CODE = "97"
# VNPay amounts are sent in hundredths of a dong
AMOUNT_SCALE = 100

HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

_VN_TZ = timezone(timedelta(hours=7))
_BASE36 = string.digits + string.ascii_uppercase

RESPONSE_MESSAGES: dict[str, str] = {
    "00": "Transaction successful",
    "07": "Amount debited; transaction flagged as suspicious",
    "09": "Card/account not registered for internet banking",
    "10": "Card/account authentication failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card/account is locked",
    "13": "Wrong one-time password (OTP)",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient account balance",
    "65": "Daily transaction limit exceeded",
    "75": "Paying bank is under maintenance",
    "79": "Payment password entered wrong too many times",
    "97": "Invalid signature",
    "99": "Other error",
}


def describe_response_code(code: str | None) -> str:
    """Translate a VNPay response code into a domain-level message."""
    return RESPONSE_MESSAGES.get(str(code or ""), f"Unknown gateway error ({code})")


def _encode(value) -> str:
    # encodeURIComponent leaves !*'() unescaped; quote_plus already keeps -_.~
    return quote_plus(str(value), safe="!*'()")


def canonical_query(params: dict) -> str:
    """Sorted, encoded ``k=v&k=v`` string that both sides sign."""
    return "&".join(
        f"{_encode(key)}={_encode(params[key])}"
        for key in sorted(params)
    )


def sign(params: dict, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_query(params).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_callback(params: dict, secret: str) -> dict:
    """Return the callback parameters without hash fields, or raise.

    Never touches the caller's dict.
    """
    data = {k: v for k, v in params.items() if k not in HASH_FIELDS}
    provided = params.get("vnp_SecureHash") or ""
    expected = sign(data, secret)
    if not provided or not hmac.compare_digest(provided.lower(), expected):
        logger.warning("VNPay callback rejected: bad signature for txn_ref=%s", data.get("vnp_TxnRef"))
        raise InvalidSignatureError(
            "Callback signature does not match",
            context={"txn_ref": data.get("vnp_TxnRef")},
        )
    return data


def to_gateway_amount(amount_vnd: int) -> int:
    return int(amount_vnd) * AMOUNT_SCALE


def from_gateway_amount(raw) -> int:
    """Whole VND from a gateway amount; ValueError when it carries a fraction of a dong."""
    amount, remainder = divmod(int(raw), AMOUNT_SCALE)
    if remainder:
        raise ValueError(f"gateway amount {raw} is not a whole number of VND")
    return amount


def format_gateway_time(moment: datetime | None = None) -> str:
    """``YYYYMMDDHHmmss`` in Vietnam local time, as VNPay expects."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_VN_TZ).strftime("%Y%m%d%H%M%S")


def generate_txn_ref(prefix: str) -> str:
    """``<prefix><ms timestamp><6 random base36 chars>``, globally unique in practice."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"


class VNPayGateway:
    """Builds signed redirect URLs and verifies returns for VNPay."""

    def __init__(self):
        self.settings = get_settings()

    @property
    def secret(self) -> str:
        return self.settings.vnpay_hash_secret

    def build_signed_url(self, base_url: str, params: dict) -> str:
        signature = sign(params, self.secret)
        return f"{base_url}?{canonical_query(params)}&vnp_SecureHash={signature}"

    def build_payment_url(
        self,
        *,
        txn_ref: str,
        amount: int,
        order_info: str,
        ip_addr: str | None,
        created_at: datetime | None = None,
    ) -> str:
        """Signed redirect URL for a deposit payment."""
        params = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_Amount": to_gateway_amount(amount),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "billpayment",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.settings.vnpay_return_url,
            "vnp_IpAddr": ip_addr or "127.0.0.1",
            "vnp_CreateDate": format_gateway_time(created_at),
        }
        return self.build_signed_url(self.settings.vnpay_url, params)

    def build_payout_url(
        self,
        *,
        txn_ref: str,
        amount: int,
        order_info: str,
        bank_code: str,
        recipient_name: str,
        ip_addr: str | None,
        created_at: datetime | None = None,
    ) -> str:
        """Signed payout (withdrawal) URL; expires after the configured window."""
        created_at = created_at or datetime.now(timezone.utc)
        expire_at = created_at + timedelta(minutes=self.settings.vnpay_payout_expire_minutes)
        params = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_Amount": to_gateway_amount(amount),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "billpayment",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.settings.vnpay_payout_return_url,
            "vnp_IpAddr": ip_addr or "127.0.0.1",
            "vnp_CreateDate": format_gateway_time(created_at),
            "vnp_ExpireDate": format_gateway_time(expire_at),
            "vnp_Bill_FirstName": recipient_name,
            "vnp_Bill_Country": "VN",
            "vnp_BankCode": bank_code,
            "vnp_Card_Type": "02",  # bank account
        }
        return self.build_signed_url(self.settings.vnpay_payout_url, params)

    def verify(self, params: dict) -> dict:
        return verify_callback(params, self.secret)


def get_vnpay_gateway() -> VNPayGateway:
    """FastAPI dependency."""
    return VNPayGateway()
