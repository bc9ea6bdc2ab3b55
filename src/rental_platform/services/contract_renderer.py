"""Lease PDF rendering using Jinja2 + xhtml2pdf."""

from __future__ import annotations

import io
from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from rental_platform.domain.models import AgreementConfirmation, Payment

_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


def _vnd(value) -> str:
    try:
        return f"{int(value):,} VND"
    except (TypeError, ValueError):
        return "-"


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
    )
    env.filters["vnd"] = _vnd
    return env


def build_lease_context(confirmation: AgreementConfirmation, payment: Payment) -> dict:
    """Template variables for a confirmation whose deposit has been paid.

    Expects ``tenant``, ``landlord`` and ``room`` (with its accommodation) to
    be loaded on the confirmation.
    """
    room = confirmation.room
    accommodation = room.accommodation if room is not None else None
    return {
        "contract_id": f"HD-{confirmation.id[:8].upper()}",
        "issued_on": datetime.now(timezone.utc).strftime("%d/%m/%Y"),
        "tenant": confirmation.tenant,
        "landlord": confirmation.landlord,
        "room_name": room.display_name if room is not None else "",
        "accommodation_name": accommodation.name if accommodation is not None else "",
        "address": accommodation.address if accommodation is not None else "",
        "terms": confirmation.agreement_terms or {},
        "transaction_id": payment.transaction_id,
    }


def render_lease_html(context: dict) -> str:
    return _environment().get_template("lease.html.j2").render(**context)


def render_lease_pdf(context: dict) -> bytes:
    """Render the lease to PDF bytes. Blocking; call through asyncio.to_thread."""
    from xhtml2pdf import pisa

    html = render_lease_html(context)
    pdf_buffer = io.BytesIO()
    pisa_status = pisa.CreatePDF(io.StringIO(html), dest=pdf_buffer, encoding="utf-8")
    if pisa_status.err:
        raise RuntimeError(f"PDF generation failed with {pisa_status.err} errors")
    return pdf_buffer.getvalue()
