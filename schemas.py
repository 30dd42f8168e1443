from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    resource_title: Optional[str] = None
    details: Optional[str] = None
    old_values: Optional[Any] = None
    new_values: Optional[Any] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime


class AuditFilters(BaseModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    success: Optional[bool] = None
    search: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class AuditPage(BaseModel):
    logs: List[AuditEntryOut]
    total_count: int
    page: int
    per_page: int
    total_pages: int


class FailureCounts(BaseModel):
    ip: Optional[str] = None
    ip_failures: int = 0
    username: Optional[str] = None
    user_failures: int = 0
    window_seconds: int


class FailureReport(FailureCounts):
    persisted_failures: int = 0


class BlockCreate(BaseModel):
    ip: str
    reason: Optional[str] = Field(default=None, max_length=500)
    duration_seconds: Optional[int] = Field(default=None, gt=0)


class PurgeResult(BaseModel):
    deleted: int
    older_than_days: int


class HealthResponse(BaseModel):
    status: str
    store: str

