import hashlib
import hmac
from typing import Optional

from fastapi import HTTPException, Request, status

from config import settings

# =========================
# ADMIN SECRET EXTRACTION
# =========================

ADMIN_SECRET_HEADER = "x-admin-secret"
ADMIN_ID_HEADER = "x-admin-id"


def extract_admin_secret(request: Request) -> str:
    """
    Extract the shared admin secret from request headers.
    Header: X-Admin-Secret
    """
    secret = request.headers.get(ADMIN_SECRET_HEADER)
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin secret missing",
        )
    return secret


# =========================
# HASHING
# =========================

def hash_secret(raw: str) -> str:
    """
    Hash a secret using SHA-256.
    Raw secrets are NEVER logged.
    """
    return hashlib.sha256(raw.encode()).hexdigest()


# =========================
# VALIDATION
# =========================

def require_admin(request: Request) -> Optional[str]:
    """
    Dependency guarding the admin control surface.
    Returns the acting admin id (X-Admin-Id), if the caller supplied one.
    """
    expected = settings.ADMIN_SHARED_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin control surface disabled",
        )

    provided = extract_admin_secret(request)
    if not hmac.compare_digest(hash_secret(provided), hash_secret(expected)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin secret",
        )

    admin_id = request.headers.get(ADMIN_ID_HEADER)
    return admin_id.strip()[:64] if admin_id and admin_id.strip() else None
