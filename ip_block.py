import ipaddress
import json
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

logger = logging.getLogger("sitesec.blocks")

BLOCK_KEY_PREFIX = "blocked_ip:"


class BlockReason(str, Enum):
    AUTO_THRESHOLD = "auto_threshold"
    MANUAL = "manual"


class IPBlock(BaseModel):
    ip: str
    reason: BlockReason
    detail: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None  # None = permanent
    created_by: Optional[str] = None
    failure_count: Optional[int] = None

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def active_at(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


class BlockStatus(BaseModel):
    ip: str
    blocked: bool
    whitelisted: bool = False
    block: Optional[IPBlock] = None


class WhitelistedIPError(ValueError):
    pass


def _block_key(ip: str) -> str:
    return f"{BLOCK_KEY_PREFIX}{ip}"


def canonical_ip(ip: str) -> str:
    """Raises ValueError for anything that is not an IP address."""
    return str(ipaddress.ip_address(ip.strip()))


class IPBlockRegistry:
    """
    Unblocked -> Blocked(reason, expiry) -> Unblocked, per IP.

    Block records live in the shared store with a TTL matching expires_at;
    the expiry is also checked against the registry clock so a record is
    never honoured past expires_at, whatever the store's TTL granularity.
    """

    def __init__(self, store, policy_provider, clock: Callable[[], float] = time.time):
        self._store = store
        self._policy = policy_provider
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def is_whitelisted(self, ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(addr in net for net in self._policy.current.whitelist_networks())

    # -------------------------
    # Lookup
    # -------------------------

    def check(self, ip: str) -> BlockStatus:
        if self.is_whitelisted(ip):
            return BlockStatus(ip=ip, blocked=False, whitelisted=True)

        raw = self._store.get(_block_key(ip))
        if raw is None:
            return BlockStatus(ip=ip, blocked=False)

        block = self._parse(raw)
        if block is None or not block.active_at(self._now()):
            return BlockStatus(ip=ip, blocked=False)

        return BlockStatus(ip=ip, blocked=True, block=block)

    def list_active(self) -> List[IPBlock]:
        now = self._now()
        blocks = []
        for _, raw in self._store.scan_prefix(BLOCK_KEY_PREFIX):
            block = self._parse(raw)
            if block is not None and block.active_at(now):
                blocks.append(block)
        blocks.sort(key=lambda b: b.created_at, reverse=True)
        return blocks

    # -------------------------
    # Transitions
    # -------------------------

    def block(
        self,
        ip: str,
        *,
        duration_seconds: Optional[int] = None,
        created_by: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> IPBlock:
        """
        Manual block. No duration means permanent.
        Re-blocking an already blocked IP replaces the record and its expiry.
        """
        ip = canonical_ip(ip)
        if self.is_whitelisted(ip):
            raise WhitelistedIPError(f"{ip} is whitelisted and cannot be blocked")
        if duration_seconds is not None and duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        block = self._new_block(
            ip,
            BlockReason.MANUAL,
            duration_seconds=duration_seconds,
            created_by=created_by,
            detail=detail,
        )
        self._store.put(_block_key(ip), block.model_dump_json(), ttl_ms=_ttl_ms(duration_seconds))
        logger.warning(
            f"IP {ip} blocked manually by {created_by or 'unknown'}. "
            f"Reason: {detail or '-'}. Permanent: {block.permanent}"
        )
        return block

    def auto_block(self, ip: str, failure_count: int) -> Optional[IPBlock]:
        """
        Threshold block. Returns the block when this call created it,
        None when the IP is whitelisted or already blocked.
        """
        if self.is_whitelisted(ip):
            return None

        duration = self._policy.current.auto_block_duration_seconds
        block = self._new_block(
            ip,
            BlockReason.AUTO_THRESHOLD,
            duration_seconds=duration,
            detail=f"Auto-blocked after {failure_count} failed login attempts",
            failure_count=failure_count,
        )
        created = self._store.put_if_absent(
            _block_key(ip), block.model_dump_json(), ttl_ms=_ttl_ms(duration)
        )
        if not created:
            return None

        logger.warning(
            f"IP {ip} auto-blocked. Attempts: {failure_count}. Expires: {block.expires_at.isoformat()}"
        )
        return block

    def evaluate_failures(self, ip: str, failure_count: int) -> Optional[IPBlock]:
        if failure_count < self._policy.current.auto_block_threshold:
            return None
        return self.auto_block(ip, failure_count)

    def unblock(self, ip: str) -> bool:
        ip = canonical_ip(ip)
        removed = self._store.delete(_block_key(ip)) > 0
        if removed:
            logger.info(f"IP {ip} unblocked")
        return removed

    # -------------------------
    # Helpers
    # -------------------------

    def _new_block(
        self,
        ip: str,
        reason: BlockReason,
        *,
        duration_seconds: Optional[int],
        created_by: Optional[str] = None,
        detail: Optional[str] = None,
        failure_count: Optional[int] = None,
    ) -> IPBlock:
        now = self._now()
        return IPBlock(
            ip=ip,
            reason=reason,
            detail=detail,
            created_at=now,
            expires_at=now + timedelta(seconds=duration_seconds) if duration_seconds else None,
            created_by=created_by,
            failure_count=failure_count,
        )

    @staticmethod
    def _parse(raw: str) -> Optional[IPBlock]:
        try:
            return IPBlock.model_validate(json.loads(raw))
        except ValueError:
            logger.error("Discarding unreadable block record")
            return None


def _ttl_ms(duration_seconds: Optional[int]) -> Optional[int]:
    if not duration_seconds:
        return None
    return int(math.ceil(duration_seconds * 1000))
