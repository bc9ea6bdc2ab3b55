"""SendGrid email service for workflow notifications.

Sends the agreement confirmation link, payment receipts, signed-lease and
withdrawal notices. Uses asyncio.to_thread to wrap the synchronous SendGrid
client. Every public function returns False instead of raising: a lost email
never fails the owning operation, but it is always logged.
"""

import asyncio
import html
import logging

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)

SENDER_NAME = "Rental Platform"


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from rental_platform.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.email_from, s.frontend_url.rstrip("/")


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def format_vnd(value) -> str:
    """Format an integer amount as 3,000,000 ₫."""
    try:
        return f"{int(value):,} ₫"
    except (ValueError, TypeError):
        return "0 ₫"


def _rows(pairs: list[tuple[str, str]]) -> str:
    return "".join(
        f'<tr><td style="padding: 6px 12px 6px 0; color: #6b7280;">{html.escape(label)}</td>'
        f'<td style="padding: 6px 0; color: #111827; font-weight: 600;">{html.escape(str(value))}</td></tr>'
        for label, value in pairs
    )


def _wrap(title: str, intro: str, table: str, cta: str = "") -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 560px; margin: 0 auto;">
        <h2 style="color: #111827;">{html.escape(title)}</h2>
        <p style="color: #374151; font-size: 15px;">{intro}</p>
        <table style="border-collapse: collapse; margin: 16px 0;">{table}</table>
        {cta}
    </div>
    """


def _button(url: str, label: str) -> str:
    return (
        f'<a href="{html.escape(url, quote=True)}" style="display: inline-block; padding: 12px 24px; '
        f'background: #2563eb; color: #ffffff; text-decoration: none; border-radius: 6px;">'
        f"{html.escape(label)}</a>"
    )


def build_confirmation_link(token: str) -> str:
    _, _, frontend_url = _get_config()
    return f"{frontend_url}/agreement/confirm/{token}"


def _build_confirmation_html(data: dict) -> str:
    terms = [
        ("Room", data.get("room_name", "")),
        ("Property", data.get("accommodation_name", "")),
        ("Landlord", data.get("landlord_name", "")),
        ("Start date", data.get("start_date", "")),
        ("Monthly rent", format_vnd(data.get("monthly_rent"))),
        ("Deposit", format_vnd(data.get("deposit"))),
    ]
    for fee in data.get("additional_fees") or []:
        terms.append((fee.get("name", "Fee"), format_vnd(fee.get("amount"))))
    intro = (
        f"Hi {html.escape(data.get('tenant_name', ''))}, your rental request was accepted. "
        "Please review the terms below and confirm within 48 hours."
    )
    return _wrap(
        "Confirm your rental agreement",
        intro,
        _rows(terms),
        _button(build_confirmation_link(data["confirmation_token"]), "Review and confirm"),
    )


def _send_mail(mail: Mail) -> bool:
    """Blocking send; runs in a worker thread."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


async def _deliver(to_email: str, subject: str, html_body: str, kind: str) -> bool:
    api_key, sender, _ = _get_config()
    if not api_key:
        logger.warning("SENDGRID_API_KEY not set, skipping %s email to %s", kind, to_email)
        return False

    try:
        mail = Mail(
            from_email=Email(sender, SENDER_NAME),
            to_emails=To(to_email),
            subject=subject,
            html_content=HtmlContent(html_body),
        )
        result = await asyncio.to_thread(_send_mail, mail)
        if result:
            logger.info("%s email sent to %s", kind, to_email)
        return result
    except Exception:
        logger.exception("Failed to send %s email to %s", kind, to_email)
        return False


# ---------------------------------------------------------------------------
# Public async API
# ---------------------------------------------------------------------------


async def send_agreement_confirmation_email(email: str, data: dict) -> bool:
    """Send the confirmation link for a freshly offered agreement.

    Args:
        email: Tenant email address.
        data: Dict with tenant_name, landlord_name, room_name, accommodation_name,
              monthly_rent, deposit, start_date, confirmation_token and
              optionally additional_fees.

    Returns:
        True on success, False on failure.
    """
    return await _deliver(
        email,
        "Please confirm your rental agreement",
        _build_confirmation_html(data),
        "agreement confirmation",
    )


async def send_payment_success_email(email: str, data: dict) -> bool:
    """Receipt for a completed deposit, with the landlord's contact details."""
    table = _rows([
        ("Transaction", data.get("transaction_id", "")),
        ("Amount", format_vnd(data.get("amount"))),
        ("Room", data.get("room_name", "")),
        ("Start date", data.get("start_date", "")),
        ("Monthly rent", format_vnd(data.get("monthly_rent"))),
        ("Landlord", data.get("landlord_name", "")),
        ("Landlord email", data.get("landlord_email", "")),
        ("Landlord phone", data.get("landlord_phone") or ""),
    ])
    intro = (
        f"Hi {html.escape(data.get('tenant_name', ''))}, we received your deposit. "
        "Your lease has been sent to you for e-signature."
    )
    return await _deliver(email, "Payment successful", _wrap("Deposit received", intro, table), "payment success")


async def send_tenancy_active_email(email: str, data: dict) -> bool:
    """Sent once the tenant has signed and the tenancy agreement exists."""
    table = _rows([
        ("Room", data.get("room_name", "")),
        ("Start date", data.get("start_date", "")),
        ("End date", data.get("end_date") or "-"),
        ("Monthly rent", format_vnd(data.get("monthly_rent"))),
    ])
    intro = f"Hi {html.escape(data.get('tenant_name', ''))}, your lease is signed and now active."
    return await _deliver(email, "Your lease is active", _wrap("Welcome to your new home", intro, table), "tenancy active")


async def send_withdrawal_success_email(email: str, data: dict) -> bool:
    """Payout completed for a withdrawal request."""
    table = _rows([
        ("Amount", format_vnd(data.get("amount"))),
        ("Reference", data.get("txn_ref", "")),
        ("Gateway transaction", data.get("transaction_no") or ""),
    ])
    intro = f"Hi {html.escape(data.get('tenant_name', ''))}, your withdrawal has been paid out."
    return await _deliver(email, "Withdrawal completed", _wrap("Withdrawal completed", intro, table), "withdrawal success")
