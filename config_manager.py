import asyncio
import ipaddress
import logging
from typing import List, Optional, Union

import httpx
from pydantic import BaseModel, Field, field_validator

from config import Settings, settings
from rate_limit import Algorithm, RateLimitTier, default_tiers

logger = logging.getLogger("sitesec.config")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


# =========================
# Security policy (hot reloadable)
# =========================

class SecurityPolicy(BaseModel):
    tiers: List[RateLimitTier]
    auth_paths: List[str] = Field(default_factory=lambda: ["/api/auth/login"])
    trusted_proxy_hops: int = Field(default=0, ge=0)
    ip_whitelist: List[str] = Field(default_factory=list)

    auto_block_threshold: int = Field(default=5, ge=1)
    auto_block_duration_seconds: int = Field(default=24 * 60 * 60, gt=0)
    failure_window_seconds: int = Field(default=900, gt=0)

    fail_open: bool = True

    @field_validator("ip_whitelist")
    @classmethod
    def _validate_whitelist(cls, value: List[str]) -> List[str]:
        for entry in value:
            ipaddress.ip_network(entry, strict=False)
        return value

    def whitelist_networks(self) -> List[IPNetwork]:
        return [ipaddress.ip_network(entry, strict=False) for entry in self.ip_whitelist]

    def is_auth_path(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.auth_paths)

    @classmethod
    def from_settings(cls, s: Settings) -> "SecurityPolicy":
        return cls(
            tiers=default_tiers(
                auth_paths=s.AUTH_PATHS,
                auth_ip_limit=s.AUTH_IP_LIMIT,
                auth_ip_window_seconds=s.AUTH_IP_WINDOW_SECONDS,
                auth_user_limit=s.AUTH_USER_LIMIT,
                auth_user_window_seconds=s.AUTH_USER_WINDOW_SECONDS,
                api_requests_per_minute=s.API_REQUESTS_PER_MINUTE,
                api_path_prefix=s.API_PATH_PREFIX,
                algorithm=Algorithm(s.RATE_LIMIT_ALGORITHM),
            ),
            auth_paths=s.AUTH_PATHS,
            trusted_proxy_hops=s.TRUSTED_PROXY_HOPS,
            ip_whitelist=s.IP_WHITELIST,
            auto_block_threshold=s.AUTO_BLOCK_THRESHOLD,
            auto_block_duration_seconds=s.AUTO_BLOCK_DURATION_SECONDS,
            failure_window_seconds=s.FAILURE_WINDOW_SECONDS,
            fail_open=s.FAIL_OPEN,
        )


class RefreshSchedule:
    """
    Delay before the next policy fetch: the base interval while the source
    answers, doubling per consecutive failure up to `max_backoff`.
    """

    def __init__(self, interval: float = 10.0, max_backoff: float = 120.0):
        self.interval = interval
        self.max_backoff = max(max_backoff, interval)
        self.failures = 0

    @property
    def delay(self) -> float:
        if self.failures == 0:
            return self.interval
        return min(self.interval * 2 ** self.failures, self.max_backoff)

    def succeeded(self) -> bool:
        """Reset; True when this ends a run of failures."""
        recovered = self.failures > 0
        self.failures = 0
        return recovered

    def failed(self) -> int:
        self.failures += 1
        return self.failures


class PolicyManager:
    """
    Holds the current SecurityPolicy snapshot.

    Readers call `current` once per request and work on that snapshot;
    a reload swaps the reference, never mutates it.
    """

    def __init__(
        self,
        initial: SecurityPolicy,
        source_url: Optional[str] = None,
        source_secret: Optional[str] = None,
        schedule: Optional[RefreshSchedule] = None,
    ):
        self._policy = initial
        self._source_url = source_url
        self._source_secret = source_secret
        self.schedule = schedule or RefreshSchedule()

    @property
    def current(self) -> SecurityPolicy:
        return self._policy

    def replace(self, policy: SecurityPolicy) -> None:
        self._policy = policy

    def apply_update(self, data: dict) -> SecurityPolicy:
        """Merge a partial policy document over the current snapshot."""
        merged = {**self._policy.model_dump(mode="json"), **data}
        policy = SecurityPolicy.model_validate(merged)
        self._policy = policy
        return policy

    def start_background_refresh(self) -> None:
        if not self._source_url:
            logger.info("Policy refresh disabled: POLICY_SOURCE_URL not set")
            return
        asyncio.create_task(self._refresh_loop())

    async def refresh_once(self) -> bool:
        """
        One fetch attempt. Failures leave the current snapshot in place;
        returns whether a new policy was applied.
        """
        try:
            changed = await self._fetch_and_update()
        except Exception as e:
            failures = self.schedule.failed()
            level = logging.ERROR if failures >= 3 else logging.WARNING
            logger.log(
                level,
                f"Policy refresh failed ({failures} in a row), keeping current policy; "
                f"next attempt in {self.schedule.delay:.0f}s: {type(e).__name__}",
            )
            return False

        if self.schedule.succeeded():
            logger.info("Policy source reachable again")
        return changed

    async def _refresh_loop(self):
        logger.info(f"Policy refresh every {self.schedule.interval:.0f}s from {self._source_url}")
        while True:
            await self.refresh_once()
            await asyncio.sleep(self.schedule.delay)

    async def _fetch_and_update(self) -> bool:
        headers = {}
        if self._source_secret:
            headers["x-control-secret"] = self._source_secret

        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(self._source_url, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        before = self._policy
        policy = self.apply_update(data)
        if policy == before:
            return False

        logger.info(
            f"Loaded security policy: {len(policy.tiers)} tiers, "
            f"{len(policy.ip_whitelist)} whitelist entries, fail_open={policy.fail_open}"
        )
        return True


# Singleton
policy_manager = PolicyManager(
    SecurityPolicy.from_settings(settings),
    source_url=settings.POLICY_SOURCE_URL,
    source_secret=settings.POLICY_SOURCE_SECRET,
    schedule=RefreshSchedule(
        interval=settings.POLICY_REFRESH_INTERVAL_SECONDS,
        max_backoff=settings.POLICY_REFRESH_MAX_BACKOFF_SECONDS,
    ),
)
