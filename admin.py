from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from audit import ACTION_AUDIT_PURGED, ACTION_IP_BLOCKED, ACTION_IP_UNBLOCKED, RESOURCE_SECURITY
from ip_block import BlockStatus, IPBlock, WhitelistedIPError, canonical_ip
from schemas import AuditEntryOut, AuditFilters, AuditPage, BlockCreate, FailureReport, PurgeResult
from security import require_admin


router = APIRouter(tags=["security"])


def get_services(request: Request):
    return request.app.state.services


def _client_ip(request: Request) -> Optional[str]:
    return getattr(request.state, "client_ip", None) or (request.client.host if request.client else None)


def _parse_ip(ip: str) -> str:
    try:
        return canonical_ip(ip)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid IP address: {ip}")


# ======================================================
# IP blocks
# ======================================================

@router.get("/blocks", response_model=List[IPBlock])
def list_blocks(services=Depends(get_services), admin_id=Depends(require_admin)):
    return services.registry.list_active()


@router.get("/blocks/{ip}", response_model=BlockStatus)
def get_block(ip: str, services=Depends(get_services), admin_id=Depends(require_admin)):
    return services.registry.check(_parse_ip(ip))


@router.post("/blocks", response_model=IPBlock, status_code=status.HTTP_201_CREATED)
def create_block(
    payload: BlockCreate,
    request: Request,
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    ip = _parse_ip(payload.ip)
    previous = services.registry.check(ip)

    try:
        block = services.registry.block(
            ip,
            duration_seconds=payload.duration_seconds,
            created_by=admin_id,
            detail=payload.reason,
        )
    except WhitelistedIPError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    services.recorder.record(
        action=ACTION_IP_BLOCKED,
        resource_type=RESOURCE_SECURITY,
        resource_id=ip,
        actor_user_id=admin_id,
        success=True,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=payload.reason,
        old_values=previous.block.model_dump(mode="json") if previous.block else None,
        new_values=block.model_dump(mode="json"),
    )
    return block


@router.delete("/blocks/{ip}")
def delete_block(
    ip: str,
    request: Request,
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    ip = _parse_ip(ip)
    previous = services.registry.check(ip)

    if not services.registry.unblock(ip):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{ip} is not blocked")

    services.recorder.record(
        action=ACTION_IP_UNBLOCKED,
        resource_type=RESOURCE_SECURITY,
        resource_id=ip,
        actor_user_id=admin_id,
        success=True,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        old_values=previous.block.model_dump(mode="json") if previous.block else None,
    )
    return {"ip": ip, "unblocked": True}


@router.get("/failures", response_model=FailureReport)
def failed_attempts(
    ip: Optional[str] = None,
    username: Optional[str] = None,
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    if not ip and not username:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ip or username required")
    if ip:
        ip = _parse_ip(ip)

    counts = services.recorder.recent_failures(ip=ip, username=username)
    persisted = services.recorder.count_failed_attempts(
        ip=ip, actor_name=username, within_seconds=counts.window_seconds
    )
    return FailureReport(**counts.model_dump(), persisted_failures=persisted)


# ======================================================
# Audit trail
# ======================================================

@router.get("/audit-logs", response_model=AuditPage)
def list_audit_logs(
    filters: AuditFilters = Depends(),
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    return services.recorder.list_entries(filters)


@router.get("/audit-logs/stats")
def audit_stats(services=Depends(get_services), admin_id=Depends(require_admin)):
    return services.recorder.stats()


@router.get("/audit-logs/resource/{resource_type}/{resource_id}", response_model=List[AuditEntryOut])
def audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    return services.recorder.by_resource(resource_type, resource_id, limit=limit)


@router.get("/audit-logs/{entry_id}", response_model=AuditEntryOut)
def get_audit_log(entry_id: int, services=Depends(get_services), admin_id=Depends(require_admin)):
    entry = services.recorder.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit log not found")
    return entry


@router.delete("/audit-logs", response_model=PurgeResult)
def purge_audit_logs(
    request: Request,
    older_than_days: int = Query(..., ge=1),
    services=Depends(get_services),
    admin_id=Depends(require_admin),
):
    try:
        deleted = services.recorder.purge_older_than(older_than_days)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    services.recorder.record(
        action=ACTION_AUDIT_PURGED,
        resource_type=RESOURCE_SECURITY,
        actor_user_id=admin_id,
        success=True,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=f"Deleted {deleted} entries older than {older_than_days} days",
    )
    return PurgeResult(deleted=deleted, older_than_days=older_than_days)
