"""Helpers shared by the gateway-facing routes."""

from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse

from rental_platform.app.config import get_settings


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def frontend_redirect(path: str, **query) -> RedirectResponse:
    """302 to a frontend page, dropping empty query values."""
    base = get_settings().frontend_url.rstrip("/")
    params = {k: v for k, v in query.items() if v is not None}
    return RedirectResponse(f"{base}{path}?{urlencode(params)}", status_code=302)
