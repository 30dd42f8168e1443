import logging
import math
import time
import uuid
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("sitesec.ratelimit")


class Algorithm(str, Enum):
    # Simple, but admits up to 2x limit across a window boundary
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"


class KeyBy(str, Enum):
    IP = "ip"
    USER = "user"
    IP_USER = "ip_user"


# =========================
# Tier definition
# =========================

class RateLimitTier(BaseModel):
    name: str
    limit: int = Field(ge=0)
    window_seconds: int = Field(gt=0)
    key_by: KeyBy = KeyBy.IP
    path_prefixes: List[str] = Field(default_factory=list)
    methods: List[str] = Field(default_factory=list)
    algorithm: Algorithm = Algorithm.SLIDING_WINDOW

    def applies_to(self, method: str, path: str) -> bool:
        if self.methods and method.upper() not in {m.upper() for m in self.methods}:
            return False
        if self.path_prefixes and not any(path.startswith(p) for p in self.path_prefixes):
            return False
        return True

    def identity_key(self, ip: str, username: Optional[str]) -> Optional[str]:
        """
        Key the counter is tracked against, or None when the tier
        cannot be evaluated for this request (user tier without a username).
        """
        if self.key_by == KeyBy.IP:
            return ip
        if not username:
            return None
        user = username.strip().lower()
        if self.key_by == KeyBy.USER:
            return user
        return f"{ip}|{user}"


class RateLimitResult(BaseModel):
    tier: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: float        # epoch seconds
    retry_after: int = 0   # seconds, only set when denied


# =========================
# Default tiers
# =========================

def default_tiers(
    *,
    auth_paths: List[str],
    auth_ip_limit: int = 20,
    auth_ip_window_seconds: int = 300,
    auth_user_limit: int = 5,
    auth_user_window_seconds: int = 900,
    api_requests_per_minute: int = 60,
    api_path_prefix: str = "/api/",
    algorithm: Algorithm = Algorithm.SLIDING_WINDOW,
) -> List[RateLimitTier]:
    return [
        RateLimitTier(
            name="auth-by-ip",
            limit=auth_ip_limit,
            window_seconds=auth_ip_window_seconds,
            key_by=KeyBy.IP,
            path_prefixes=list(auth_paths),
            methods=["POST"],
            algorithm=algorithm,
        ),
        RateLimitTier(
            name="auth-by-user",
            limit=auth_user_limit,
            window_seconds=auth_user_window_seconds,
            key_by=KeyBy.USER,
            path_prefixes=list(auth_paths),
            methods=["POST"],
            algorithm=algorithm,
        ),
        RateLimitTier(
            name="api",
            limit=api_requests_per_minute,
            window_seconds=60,
            key_by=KeyBy.IP,
            path_prefixes=[api_path_prefix],
            algorithm=algorithm,
        ),
    ]


# =========================
# Engine
# =========================

class RateLimiter:
    def __init__(self, store, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    def hit(self, tier: RateLimitTier, identity_key: str) -> RateLimitResult:
        """
        Count one request for (tier, identity_key) and decide.
        One atomic store round trip; StoreUnavailable propagates.
        """
        now = self._clock()
        if tier.algorithm == Algorithm.FIXED_WINDOW:
            return self._hit_fixed(tier, identity_key, now)
        return self._hit_sliding(tier, identity_key, now)

    def _hit_fixed(self, tier: RateLimitTier, identity_key: str, now: float) -> RateLimitResult:
        window_index = int(now // tier.window_seconds)
        reset_at = float((window_index + 1) * tier.window_seconds)
        key = f"rl:{tier.name}:{identity_key}:{window_index}"

        count = self._store.incr_window(key, ttl_ms=math.ceil((reset_at - now) * 1000))

        allowed = count <= tier.limit
        return RateLimitResult(
            tier=tier.name,
            allowed=allowed,
            limit=tier.limit,
            remaining=max(tier.limit - count, 0),
            reset_at=reset_at,
            retry_after=0 if allowed else _retry_after(reset_at, now),
        )

    def _hit_sliding(self, tier: RateLimitTier, identity_key: str, now: float) -> RateLimitResult:
        now_ms = int(now * 1000)
        window_ms = tier.window_seconds * 1000
        key = f"rl:{tier.name}:{identity_key}"

        allowed, count, oldest_ms = self._store.hit_sliding(
            key,
            now_ms=now_ms,
            window_ms=window_ms,
            limit=tier.limit,
            member=f"{now_ms}:{uuid.uuid4().hex}",
        )

        reset_at = (oldest_ms + window_ms) / 1000.0
        return RateLimitResult(
            tier=tier.name,
            allowed=allowed,
            limit=tier.limit,
            remaining=max(tier.limit - count, 0),
            reset_at=reset_at,
            retry_after=0 if allowed else _retry_after(reset_at, now),
        )

    def check_tiers(
        self,
        tiers: List[RateLimitTier],
        *,
        method: str,
        path: str,
        ip: str,
        username: Optional[str] = None,
    ) -> List[RateLimitResult]:
        """
        Evaluate every applicable tier in order, stopping at the first denial
        so later tiers do not consume budget for a rejected request.
        """
        results: List[RateLimitResult] = []
        for tier in tiers:
            if not tier.applies_to(method, path):
                continue
            identity_key = tier.identity_key(ip, username)
            if identity_key is None:
                continue

            result = self.hit(tier, identity_key)
            results.append(result)

            if not result.allowed:
                logger.info(
                    f"Rate limit exceeded tier={tier.name} key={identity_key} "
                    f"limit={tier.limit}/{tier.window_seconds}s"
                )
                break
        return results


def _retry_after(reset_at: float, now: float) -> int:
    return max(int(math.ceil(reset_at - now)), 1)
