from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text, event

from db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImmutableAuditEntry(RuntimeError):
    pass


class AuditLog(Base):
    """
    Append-only record of every authentication attempt, mutation
    and gate rejection. Rows are never updated.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    user_name = Column(String(255), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(64), nullable=True)
    resource_title = Column(String(500), nullable=True)
    details = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=True, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_audit_logs_ip_success_created", "ip_address", "success", "created_at"),
        Index("ix_audit_logs_resource_created", "resource_type", "resource_id", "created_at"),
        Index("ix_audit_logs_user_action", "user_id", "action"),
        Index("ix_audit_logs_created_success", "created_at", "success"),
    )


@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableAuditEntry(f"audit entry {target.id} is immutable")
