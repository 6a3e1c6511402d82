from __future__ import annotations
from fastapi import Header, HTTPException, Request
from typing import Optional, List, Tuple
import hmac
import ipaddress

from oauth_vault.services.orchestrator import CallerContext

def _ip_allowed(client_ip: str, allowed: List[str]) -> bool:
    """
    True if client_ip is in any allowed CIDR or exact host string.
    Empty allowed => allow all (IP check disabled).
    """
    if not allowed:
        return True
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return client_ip in allowed

    for entry in allowed:
        entry = entry.strip()
        if not entry:
            continue
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            # not an address or network (e.g. "localhost")
            if client_ip == entry:
                return True
    return False

MAX_IP_LENGTH = 64

def _get_client_ip(request: Request) -> str:
    """
    The connecting peer, unless that peer is a trusted proxy. Then X-Forwarded-For is
    walked right to left and the first hop that is not itself a trusted proxy wins;
    anything left of it was written by the client and is ignored.
    """
    peer = request.client.host if request.client else ""
    trusted = [_normalize_host(x) for x in request.app.state.settings.TRUSTED_PROXIES or []]
    if not trusted or not peer or not _ip_allowed(peer, trusted):
        return peer[:MAX_IP_LENGTH]

    hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
    for hop in reversed(hops):
        if not _ip_allowed(hop, trusted):
            return hop[:MAX_IP_LENGTH]
    return peer[:MAX_IP_LENGTH]

def _normalize_host(s: str) -> str:
    return "127.0.0.1" if s.strip().lower() == "localhost" else s.strip()

async def require_internal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    cfg = request.app.state.settings
    expected = cfg.API_INTERNAL_KEY
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        # same 401 for missing/invalid reduces key probing
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")

    client_ip = _get_client_ip(request)
    allowed = [_normalize_host(x) for x in cfg.INTERNAL_ALLOWED_IPS or []]
    if not _ip_allowed(client_ip, allowed):
        raise HTTPException(status_code=403, detail="ip_not_allowed")

async def subject_identity(
    x_subject_id: Optional[str] = Header(default=None, alias="X-Subject-Id"),
    x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
) -> Tuple[str, str]:
    """Authenticated subject, as asserted by the gateway in front of this service."""
    subject = (x_subject_id or "").strip()
    org = (x_organization_id or "").strip()
    if not subject or not org or len(subject) > 255 or len(org) > 255:
        raise HTTPException(status_code=401, detail="missing subject identity")
    return subject, org

def caller_context(request: Request) -> CallerContext:
    return CallerContext(ip=_get_client_ip(request) or None, user_agent=request.headers.get("user-agent"))
