"""Tests for the VNPay signing codec."""

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from rental_platform.domain.errors import InvalidSignatureError
from rental_platform.infra.vnpay import (
    VNPayGateway,
    canonical_query,
    describe_response_code,
    format_gateway_time,
    from_gateway_amount,
    generate_txn_ref,
    sign,
    to_gateway_amount,
    verify_callback,
)


class TestCanonicalQuery:

    def test_sorted_by_key(self):
        assert canonical_query({"b": "2", "a": "1", "c": "3"}) == "a=1&b=2&c=3"

    def test_spaces_encoded_as_plus(self):
        assert canonical_query({"vnp_OrderInfo": "Thanh toan coc"}) == "vnp_OrderInfo=Thanh+toan+coc"

    def test_reserved_characters_encoded(self):
        query = canonical_query({"url": "http://x.vn/a?b=1&c=2"})
        assert query == "url=http%3A%2F%2Fx.vn%2Fa%3Fb%3D1%26c%3D2"

    def test_encode_uri_component_safe_characters_kept(self):
        assert canonical_query({"k": "a-b_c.d~e!f*g'h(i)"}) == "k=a-b_c.d~e!f*g'h(i)"

    def test_non_string_values(self):
        assert canonical_query({"vnp_Amount": 600000000}) == "vnp_Amount=600000000"


class TestSignAndVerify:

    def test_sign_is_hex_sha512(self):
        signature = sign({"a": "1"}, "secret")
        assert len(signature) == 128
        int(signature, 16)

    def test_sign_depends_on_secret(self):
        assert sign({"a": "1"}, "one") != sign({"a": "1"}, "two")

    def test_verify_roundtrip_strips_hash_fields(self):
        params = {"vnp_TxnRef": "VIE1", "vnp_ResponseCode": "00"}
        params["vnp_SecureHash"] = sign(params, "secret")
        params["vnp_SecureHashType"] = "HmacSHA512"

        data = verify_callback(params, "secret")

        assert data == {"vnp_TxnRef": "VIE1", "vnp_ResponseCode": "00"}
        assert "vnp_SecureHash" in params

    def test_verify_accepts_uppercase_hash(self):
        params = {"vnp_TxnRef": "VIE1"}
        params["vnp_SecureHash"] = sign(params, "secret").upper()
        assert verify_callback(params, "secret")["vnp_TxnRef"] == "VIE1"

    def test_tampered_value_rejected(self):
        params = {"vnp_TxnRef": "VIE1", "vnp_Amount": "100"}
        params["vnp_SecureHash"] = sign(params, "secret")
        params["vnp_Amount"] = "999999"
        with pytest.raises(InvalidSignatureError):
            verify_callback(params, "secret")

    def test_missing_hash_rejected(self):
        with pytest.raises(InvalidSignatureError):
            verify_callback({"vnp_TxnRef": "VIE1"}, "secret")


class TestHelpers:

    def test_amount_scaling(self):
        assert to_gateway_amount(6_000_000) == 600_000_000
        assert from_gateway_amount("600000000") == 6_000_000

    def test_fractional_gateway_amount_rejected(self):
        with pytest.raises(ValueError):
            from_gateway_amount("600000099")

    def test_gateway_time_is_vietnam_local(self):
        moment = datetime(2026, 1, 1, 20, 30, 0, tzinfo=timezone.utc)
        assert format_gateway_time(moment) == "20260102033000"

    def test_naive_time_treated_as_utc(self):
        assert format_gateway_time(datetime(2026, 1, 1, 0, 0, 0)) == "20260101070000"

    def test_txn_ref_shape(self):
        ref = generate_txn_ref("VIE")
        assert ref.startswith("VIE")
        assert ref[3:-6].isdigit()
        assert ref[-6:].isalnum() and ref[-6:] == ref[-6:].upper()
        assert generate_txn_ref("VIE") != ref

    @pytest.mark.parametrize("code,fragment", [
        ("00", "successful"),
        ("24", "cancelled"),
        ("51", "Insufficient"),
        ("97", "signature"),
    ])
    def test_describe_known_codes(self, code, fragment):
        assert fragment in describe_response_code(code)

    def test_describe_unknown_code(self):
        assert "42" in describe_response_code("42")


class TestGateway:

    def test_payment_url_is_signed_and_verifiable(self, test_settings):
        url = VNPayGateway().build_payment_url(
            txn_ref="VIE123",
            amount=6_000_000,
            order_info="Thanh toan tien coc",
            ip_addr="10.0.0.1",
        )
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith(test_settings.vnpay_url)
        assert params["vnp_Amount"] == "600000000"
        assert params["vnp_TxnRef"] == "VIE123"
        assert params["vnp_TmnCode"] == "TESTTMN"
        assert params["vnp_ReturnUrl"] == test_settings.vnpay_return_url
        # parse_qs decodes '+' to spaces, which canonical_query re-encodes identically
        assert VNPayGateway().verify(params)["vnp_TxnRef"] == "VIE123"

    def test_payout_url_carries_expiry_and_bank(self, test_settings):
        created = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
        url = VNPayGateway().build_payout_url(
            txn_ref="WD1",
            amount=5_000_000,
            order_info="Hoan tra",
            bank_code="VCB",
            recipient_name="NGUYEN VAN A",
            ip_addr=None,
            created_at=created,
        )
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}

        assert url.startswith(test_settings.vnpay_payout_url)
        assert params["vnp_BankCode"] == "VCB"
        assert params["vnp_CreateDate"] == "20260101070000"
        assert params["vnp_ExpireDate"] == "20260101071500"
        assert params["vnp_IpAddr"] == "127.0.0.1"
        assert params["vnp_ReturnUrl"] == test_settings.vnpay_payout_return_url
