from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ip_block import IPBlock
from rate_limit import RateLimitResult


class Decision(str, Enum):
    ALLOW = "ALLOW"
    BLOCKED = "BLOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    UNAVAILABLE = "UNAVAILABLE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"


class GateOutcome(BaseModel):
    """Result of one gate step. Anything but ALLOW short-circuits the request."""

    decision: Decision
    reason: Optional[str] = None
    rate_limits: List[RateLimitResult] = []
    block: Optional[IPBlock] = None

    @property
    def rejected(self) -> bool:
        return self.decision != Decision.ALLOW

    @property
    def denied_limit(self) -> Optional[RateLimitResult]:
        for result in self.rate_limits:
            if not result.allowed:
                return result
        return None

    @property
    def tightest_limit(self) -> Optional[RateLimitResult]:
        if not self.rate_limits:
            return None
        return min(self.rate_limits, key=lambda r: r.remaining)


# =========================
# Constructors
# =========================

def allow(rate_limits: Optional[List[RateLimitResult]] = None, reason: Optional[str] = None) -> GateOutcome:
    return GateOutcome(decision=Decision.ALLOW, rate_limits=rate_limits or [], reason=reason)


def blocked(block: IPBlock) -> GateOutcome:
    return GateOutcome(
        decision=Decision.BLOCKED,
        reason="IP address is blocked due to suspicious activity",
        block=block,
    )


def rate_limited(rate_limits: List[RateLimitResult]) -> GateOutcome:
    denied = next(r for r in rate_limits if not r.allowed)
    return GateOutcome(
        decision=Decision.RATE_LIMITED,
        reason=f"Too many requests ({denied.tier}: {denied.limit} allowed)",
        rate_limits=rate_limits,
    )


def unavailable(step: str) -> GateOutcome:
    return GateOutcome(decision=Decision.UNAVAILABLE, reason=f"{step} unavailable")


def payload_too_large(limit: int) -> GateOutcome:
    return GateOutcome(decision=Decision.PAYLOAD_TOO_LARGE, reason=f"request body larger than {limit} bytes")


# =========================
# Rendering
# =========================

def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def to_response(outcome: GateOutcome, now: datetime) -> JSONResponse:
    body: Dict[str, Any]

    if outcome.decision == Decision.RATE_LIMITED:
        denied = outcome.denied_limit
        body = {
            "detail": "Too many requests",
            "tier": denied.tier,
            "limit": denied.limit,
            "remaining": denied.remaining,
            "reset": int(denied.reset_at),
            "retry_after": denied.retry_after,
        }
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=body,
            headers=rate_limit_headers(denied),
        )

    if outcome.decision == Decision.BLOCKED:
        block = outcome.block
        headers = {}
        body = {
            "detail": (
                "Your IP address has been blocked due to suspicious activity. "
                "Please contact support if you believe this is an error."
            ),
            "expires_at": block.expires_at.isoformat() if block and block.expires_at else None,
        }
        if block and block.expires_at:
            seconds = int((block.expires_at - now).total_seconds())
            headers["Retry-After"] = str(max(seconds, 1))
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=body, headers=headers)

    if outcome.decision == Decision.UNAVAILABLE:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Service temporarily unavailable"},
        )

    if outcome.decision == Decision.PAYLOAD_TOO_LARGE:
        return JSONResponse(
            status_code=413,
            content={"detail": "Request body too large"},
        )

    raise ValueError(f"{outcome.decision} is not a rejection")
