import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from admin import router as admin_router
from audit import AuditRecorder
from config import settings
from config_manager import policy_manager
from db import Base, SessionLocal, engine
from gate import SecurityGate, SecurityGateMiddleware
from ip_block import IPBlockRegistry
from proxy import forward_request
from rate_limit import RateLimiter
from schemas import HealthResponse
from store import RedisStore, StoreUnavailable


logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("sitesec.gateway")


# ======================================================
# CORS (Gateway-level, authoritative)
# ======================================================

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

EXEMPT_PATHS = ("/health",)


# ======================================================
# Service wiring
# ======================================================

class SecurityServices:
    """Everything the gate and the admin router share for one app."""

    def __init__(self, store, session_factory, policy_provider, clock: Callable[[], float] = time.time):
        self.store = store
        self.policy = policy_provider
        self.limiter = RateLimiter(store, clock=clock)
        self.registry = IPBlockRegistry(store, policy_provider, clock=clock)
        self.recorder = AuditRecorder(
            session_factory,
            store=store,
            policy_provider=policy_provider,
            clock=clock,
            retention_min_days=settings.AUDIT_RETENTION_MIN_DAYS,
        )
        self.gate = SecurityGate(
            self.registry,
            self.limiter,
            self.recorder,
            policy_provider,
            clock=clock,
            admin_path_prefix=settings.ADMIN_PATH_PREFIX,
        )


def _default_store() -> RedisStore:
    from redis_client import redis_client

    return RedisStore(redis_client, key_prefix=settings.STORE_KEY_PREFIX)


def create_app(
    store=None,
    session_factory=None,
    db_engine=None,
    policy_provider=None,
    clock: Callable[[], float] = time.time,
    content_backend_url: Optional[str] = None,
) -> FastAPI:
    app = FastAPI(title="Site Security Gateway")

    services = SecurityServices(
        store if store is not None else _default_store(),
        session_factory or SessionLocal,
        policy_provider or policy_manager,
        clock=clock,
    )
    app.state.services = services
    upstream_base = (content_backend_url or settings.CONTENT_BACKEND_URL).rstrip("/")
    bind = db_engine if db_engine is not None else engine

    app.add_middleware(SecurityGateMiddleware, gate=services.gate, exempt_paths=EXEMPT_PATHS)

    # ==================================================
    # Startup
    # ==================================================

    @app.on_event("startup")
    async def startup():
        Base.metadata.create_all(bind=bind)
        if services.policy is policy_manager:
            policy_manager.start_background_refresh()

    # ==================================================
    # Errors
    # ==================================================

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Shared store unavailable on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Service temporarily unavailable"},
        )

    # ==================================================
    # Health
    # ==================================================

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        try:
            services.store.ping()
        except StoreUnavailable:
            return HealthResponse(status="degraded", store="unavailable")
        return HealthResponse(status="ok", store="ok")

    # ==================================================
    # Admin control surface
    # ==================================================

    app.include_router(admin_router, prefix=settings.ADMIN_PATH_PREFIX)

    # ==================================================
    # Preflight (never gated, never proxied)
    # ==================================================

    @app.options("/{path:path}")
    async def preflight_handler(path: str):
        return Response(status_code=200, headers=CORS_HEADERS)

    # ==================================================
    # Content backend (everything the gate admitted)
    # ==================================================

    @app.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    )
    async def gateway(path: str, request: Request):
        client_ip = getattr(request.state, "client_ip", None) or (
            request.client.host if request.client else "unknown"
        )

        response = await forward_request(
            request=request,
            upstream_url=f"{upstream_base}/{path}",
            client_ip=client_ip,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
            request_id=getattr(request.state, "request_id", None),
        )

        for k, v in CORS_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    return app


app = create_app()
