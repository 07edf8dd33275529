"""Submitter details taken from request headers.

Behind Cloudflare the client address arrives in ``CF-Connecting-IP`` and the
country in ``CF-IPCountry``.  Elsewhere the first ``X-Forwarded-For`` entry
is used, then the socket peer.
"""

from __future__ import annotations

from starlette.requests import Request

from radarscan.core.session import Provenance

_MAX_USER_AGENT_LENGTH = 512


def client_ip(request: Request) -> str | None:
    """Return the best-known client IP address of *request*."""
    value = request.headers.get("cf-connecting-ip", "").strip()
    if value:
        return value
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else None


def request_provenance(request: Request) -> Provenance:
    user_agent = request.headers.get("user-agent") or None
    country = request.headers.get("cf-ipcountry", "").strip().upper() or None
    return Provenance(
        ip_address=client_ip(request),
        user_agent=user_agent[:_MAX_USER_AGENT_LENGTH] if user_agent else None,
        country=country[:8] if country else None,
    )
