import ipaddress
from typing import List, Optional, Tuple

from fastapi import Request
from pydantic import BaseModel

UNKNOWN_PEER = "unknown"
USER_AGENT_MAX_LEN = 512


class ClientIdentity(BaseModel):
    ip: str
    proxy_chain_trusted: bool = False
    user_agent: str = ""
    authenticated_user_id: Optional[str] = None
    username: Optional[str] = None


# =========================
# Parsing helpers
# =========================

def normalize_ip(value: Optional[str]) -> Optional[str]:
    """
    Canonical form of an address taken from a header or socket,
    or None when it is not an IP. Ports and IPv6 brackets are stripped.
    """
    if not value:
        return None
    candidate = value.strip().strip('"')

    if candidate.startswith("["):
        end = candidate.find("]")
        if end == -1:
            return None
        candidate = candidate[1:end]
    elif candidate.count(":") == 1:
        # IPv4 with port
        candidate = candidate.split(":", 1)[0]

    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def _split_forwarded_for(header: Optional[str]) -> List[str]:
    if not header:
        return []
    return [part.strip() for part in header.split(",") if part.strip()]


# =========================
# Resolution
# =========================

def resolve_client_ip(
    peer: Optional[str],
    forwarded_for: Optional[str],
    real_ip: Optional[str] = None,
    trusted_hops: int = 0,
) -> Tuple[str, bool]:
    """
    Pick the client address. Returns (ip, came_from_trusted_header).

    Only the right-most `trusted_hops` entries of the chain were written by
    proxies we control; anything further left is client supplied. The
    address seen by the outermost trusted proxy is the client. Any missing
    or malformed input falls back to the transport peer.
    """
    peer_ip = normalize_ip(peer) or (peer.strip() if peer and peer.strip() else UNKNOWN_PEER)

    if trusted_hops <= 0:
        return peer_ip, False

    hops = _split_forwarded_for(forwarded_for)
    if hops:
        chain = hops + [peer_ip]
        if len(chain) < trusted_hops + 1:
            return peer_ip, False
        selected = normalize_ip(chain[-(trusted_hops + 1)])
        if selected is None:
            return peer_ip, False
        return selected, True

    selected = normalize_ip(real_ip)
    if selected is not None:
        return selected, True

    return peer_ip, False


def resolve_identity(request: Request, trusted_hops: int = 0) -> ClientIdentity:
    peer = request.client.host if request.client else None
    ip, trusted = resolve_client_ip(
        peer,
        request.headers.get("x-forwarded-for"),
        request.headers.get("x-real-ip"),
        trusted_hops=trusted_hops,
    )
    user_agent = (request.headers.get("user-agent") or "")[:USER_AGENT_MAX_LEN]

    return ClientIdentity(
        ip=ip,
        proxy_chain_trusted=trusted,
        user_agent=user_agent,
        authenticated_user_id=getattr(request.state, "user_id", None),
    )
