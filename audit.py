"""
Audit recorder.

Writes are best effort relative to the request that produced them: a
database failure is logged and swallowed, never raised into the request.
The recorder also keeps the trailing failure logs (in the shared store)
that drive automatic IP blocking.
"""
import logging
import math
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from sqlalchemy import func, or_

from db import session_scope
from models import AuditLog
from schemas import AuditEntryOut, AuditFilters, AuditPage, FailureCounts

logger = logging.getLogger("sitesec.audit")

RESOURCE_AUTHENTICATION = "authentication"
RESOURCE_SECURITY = "security"

ACTION_LOGIN = "login"
ACTION_LOGIN_FAILED = "login_failed"
ACTION_REQUEST_BLOCKED = "request_blocked"
ACTION_RATE_LIMITED = "rate_limited"
ACTION_GATE_UNAVAILABLE = "gate_unavailable"
ACTION_REQUEST_REJECTED = "request_rejected"
ACTION_IP_BLOCKED = "ip_blocked"
ACTION_IP_UNBLOCKED = "ip_unblocked"
ACTION_AUDIT_PURGED = "audit_logs_purged"


def _ip_failure_key(ip: str) -> str:
    return f"failures:ip:{ip}"


def _user_failure_key(username: str) -> str:
    return f"failures:user:{username.strip().lower()}"


class AuditRecorder:
    def __init__(
        self,
        session_factory,
        store=None,
        policy_provider=None,
        clock: Callable[[], float] = time.time,
        retention_min_days: int = 30,
    ):
        self._session_factory = session_factory
        self._store = store
        self._policy = policy_provider
        self._clock = clock
        self._retention_min_days = retention_min_days

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # =========================
    # Write side
    # =========================

    def record(
        self,
        *,
        action: str,
        resource_type: str,
        success: bool = True,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_title: Optional[str] = None,
        details: Optional[str] = None,
        old_values: Optional[Any] = None,
        new_values: Optional[Any] = None,
        error_message: Optional[str] = None,
    ) -> Optional[int]:
        """Append one entry. Returns its id, or None if it could not be stored."""
        try:
            with session_scope(self._session_factory) as db:
                row = AuditLog(
                    user_id=actor_user_id,
                    user_name=actor_name,
                    action=action,
                    resource_type=resource_type,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    resource_title=resource_title,
                    details=details,
                    old_values=old_values,
                    new_values=new_values,
                    ip_address=ip,
                    user_agent=user_agent,
                    success=success,
                    error_message=error_message,
                    created_at=self._now(),
                )
                db.add(row)
                db.commit()
                entry_id = row.id
        except Exception:
            logger.exception(
                f"Audit write failed (dropped): action={action} resource={resource_type} "
                f"ip={ip} success={success}"
            )
            return None

        logger.debug(f"AUDIT: id={entry_id} action={action} resource={resource_type}/{resource_id}")
        return entry_id

    # =========================
    # Trailing failure logs (shared store)
    # =========================

    def _failure_window_seconds(self) -> int:
        return self._policy.current.failure_window_seconds

    def record_failure(self, ip: str, username: Optional[str] = None) -> FailureCounts:
        """
        Count one authentication failure against the IP (and username),
        returning the trailing counts including this one.
        """
        window = self._failure_window_seconds()
        now_ms = int(self._clock() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"

        ip_failures = self._store.add_event(_ip_failure_key(ip), now_ms, window * 1000, member)
        user_failures = 0
        if username:
            user_failures = self._store.add_event(
                _user_failure_key(username), now_ms, window * 1000, member
            )

        return FailureCounts(
            ip=ip,
            ip_failures=ip_failures,
            username=username,
            user_failures=user_failures,
            window_seconds=window,
        )

    def recent_failures(self, ip: Optional[str] = None, username: Optional[str] = None) -> FailureCounts:
        window = self._failure_window_seconds()
        now_ms = int(self._clock() * 1000)

        return FailureCounts(
            ip=ip,
            ip_failures=self._store.count_events(_ip_failure_key(ip), now_ms, window * 1000) if ip else 0,
            username=username,
            user_failures=(
                self._store.count_events(_user_failure_key(username), now_ms, window * 1000)
                if username else 0
            ),
            window_seconds=window,
        )

    def clear_user_failures(self, username: str) -> None:
        self._store.delete(_user_failure_key(username))

    def clear_ip_failures(self, ip: str) -> None:
        self._store.delete(_ip_failure_key(ip))

    # =========================
    # Read side
    # =========================

    def get_entry(self, entry_id: int) -> Optional[AuditEntryOut]:
        with session_scope(self._session_factory) as db:
            row = db.get(AuditLog, entry_id)
            return AuditEntryOut.model_validate(row) if row else None

    def list_entries(self, filters: AuditFilters) -> AuditPage:
        with session_scope(self._session_factory) as db:
            query = db.query(AuditLog)

            if filters.start_date is not None:
                query = query.filter(AuditLog.created_at >= filters.start_date)
            if filters.end_date is not None:
                query = query.filter(AuditLog.created_at <= filters.end_date)
            if filters.action:
                query = query.filter(AuditLog.action == filters.action)
            if filters.resource_type:
                query = query.filter(AuditLog.resource_type == filters.resource_type)
            if filters.resource_id:
                query = query.filter(AuditLog.resource_id == filters.resource_id)
            if filters.user_id:
                query = query.filter(AuditLog.user_id == filters.user_id)
            if filters.user_name:
                query = query.filter(AuditLog.user_name == filters.user_name)
            if filters.ip_address:
                query = query.filter(AuditLog.ip_address == filters.ip_address)
            if filters.success is not None:
                query = query.filter(AuditLog.success == filters.success)
            if filters.search:
                pattern = f"%{filters.search}%"
                query = query.filter(
                    or_(
                        AuditLog.user_name.ilike(pattern),
                        AuditLog.details.ilike(pattern),
                        AuditLog.resource_title.ilike(pattern),
                    )
                )

            total_count = query.count()
            rows = (
                query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(filters.limit)
                .offset(filters.offset)
                .all()
            )
            logs = [AuditEntryOut.model_validate(r) for r in rows]

        return AuditPage(
            logs=logs,
            total_count=total_count,
            page=filters.offset // filters.limit + 1,
            per_page=filters.limit,
            total_pages=math.ceil(total_count / filters.limit) if total_count else 0,
        )

    def _newest(self, *criteria, limit: int) -> List[AuditEntryOut]:
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(AuditLog)
                .filter(*criteria)
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(limit)
                .all()
            )
            return [AuditEntryOut.model_validate(r) for r in rows]

    def by_resource(self, resource_type: str, resource_id: str, limit: int = 100) -> List[AuditEntryOut]:
        return self._newest(
            AuditLog.resource_type == resource_type,
            AuditLog.resource_id == str(resource_id),
            limit=limit,
        )

    def by_actor(self, user_id: str, limit: int = 50) -> List[AuditEntryOut]:
        return self._newest(AuditLog.user_id == user_id, limit=limit)

    def recent(self, limit: int = 50) -> List[AuditEntryOut]:
        return self._newest(limit=limit)

    def failed(self, limit: int = 50) -> List[AuditEntryOut]:
        return self._newest(AuditLog.success.is_(False), limit=limit)

    def count_failed_attempts(
        self,
        *,
        ip: Optional[str] = None,
        actor_name: Optional[str] = None,
        since: Optional[datetime] = None,
        within_seconds: Optional[int] = None,
    ) -> int:
        """Persisted failed authentication attempts, served by the (ip, success, created_at) index."""
        if within_seconds is not None:
            since = self._now() - timedelta(seconds=within_seconds)
        with session_scope(self._session_factory) as db:
            query = db.query(func.count(AuditLog.id)).filter(
                AuditLog.success.is_(False),
                AuditLog.resource_type == RESOURCE_AUTHENTICATION,
            )
            if ip:
                query = query.filter(AuditLog.ip_address == ip)
            if actor_name:
                query = query.filter(AuditLog.user_name == actor_name)
            if since is not None:
                query = query.filter(AuditLog.created_at >= since)
            return int(query.scalar() or 0)

    def stats(self, top: int = 5) -> dict:
        with session_scope(self._session_factory) as db:
            total = db.query(func.count(AuditLog.id)).scalar() or 0
            failed = (
                db.query(func.count(AuditLog.id))
                .filter(AuditLog.success.is_(False))
                .scalar()
                or 0
            )

            def top_counts(column):
                return [
                    {"value": value, "count": count}
                    for value, count in (
                        db.query(column, func.count(AuditLog.id))
                        .filter(column.isnot(None))
                        .group_by(column)
                        .order_by(func.count(AuditLog.id).desc())
                        .limit(top)
                        .all()
                    )
                ]

            top_actions = top_counts(AuditLog.action)
            top_resources = top_counts(AuditLog.resource_type)
            top_users = top_counts(AuditLog.user_name)

        success_rate = ((total - failed) / total * 100.0) if total else 100.0
        return {
            "summary": {
                "total_logs": total,
                "failed_logs": failed,
                "success_rate": f"{success_rate:.1f}%",
            },
            "top_actions": top_actions,
            "top_resources": top_resources,
            "top_users": top_users,
            "recent_failed_actions": [
                {
                    "id": e.id,
                    "action": e.action,
                    "resource_type": e.resource_type,
                    "user_name": e.user_name,
                    "error_message": e.error_message,
                    "created_at": e.created_at.isoformat(),
                }
                for e in self.failed(limit=10)
            ],
        }

    def purge_older_than(self, days: int) -> int:
        if days < self._retention_min_days:
            raise ValueError(f"Cannot delete logs newer than {self._retention_min_days} days")

        cutoff = self._now() - timedelta(days=days)
        with session_scope(self._session_factory) as db:
            deleted = (
                db.query(AuditLog)
                .filter(AuditLog.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()

        logger.info(f"Purged {deleted} audit entries older than {days} days")
        return int(deleted)
