import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from fastapi import Request, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from audit import (
    ACTION_GATE_UNAVAILABLE,
    ACTION_IP_BLOCKED,
    ACTION_LOGIN,
    ACTION_LOGIN_FAILED,
    ACTION_RATE_LIMITED,
    ACTION_REQUEST_BLOCKED,
    ACTION_REQUEST_REJECTED,
    RESOURCE_AUTHENTICATION,
    RESOURCE_SECURITY,
)
from config_manager import SecurityPolicy
from decision import (
    Decision,
    GateOutcome,
    allow,
    blocked,
    payload_too_large,
    rate_limit_headers,
    rate_limited,
    to_response,
    unavailable,
)
from identity import ClientIdentity, resolve_identity
from store import StoreUnavailable

logger = logging.getLogger("sitesec.gate")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
METHOD_VERBS = {"POST": "created", "PUT": "updated", "PATCH": "updated", "DELETE": "deleted"}
NON_RESOURCE_SEGMENTS = {"api", "v1", "admin"}
USERNAME_FIELDS = ("username", "email", "login")
MAX_LOGIN_BODY_BYTES = 64 * 1024

# Downstream handlers may describe the operation through these response headers
AUDIT_HEADER_PREFIX = "x-audit-"

REQUEST_ID_HEADER = "x-request-id"
# Caller-supplied ids are kept only when they are short and log-safe
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

SECURITY_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; "
        "font-src 'self'; "
        "connect-src 'self'; "
        "frame-ancestors 'none';"
    ),
    "Permissions-Policy": (
        "camera=(), microphone=(), location=(), payment=(), "
        "usb=(), magnetometer=(), gyroscope=(), accelerometer=()"
    ),
}

REJECTION_ACTIONS = {
    Decision.BLOCKED: ACTION_REQUEST_BLOCKED,
    Decision.RATE_LIMITED: ACTION_RATE_LIMITED,
    Decision.UNAVAILABLE: ACTION_GATE_UNAVAILABLE,
    Decision.PAYLOAD_TOO_LARGE: ACTION_REQUEST_REJECTED,
}


# ======================================================
# Request classification
# ======================================================

def classify_request(method: str, path: str) -> Tuple[str, str, Optional[str]]:
    """
    (action, resource_type, resource_id) guessed from the route,
    e.g. PUT /api/admin/posts/42 -> ("posts_updated", "posts", "42").
    """
    segments = [s for s in path.split("/") if s and s.lower() not in NON_RESOURCE_SEGMENTS]
    resource_type = segments[0] if segments else "root"
    resource_id = segments[1] if len(segments) > 1 else None

    if len(segments) > 2:
        action = f"{resource_type}_{segments[2]}"
    else:
        action = f"{resource_type}_{METHOD_VERBS.get(method.upper(), method.lower())}"
    return action, resource_type, resource_id


class LoginBodyTooLarge(Exception):
    """A login body went past MAX_LOGIN_BODY_BYTES, declared or streamed."""


async def read_login_body(request: Request, limit: int = MAX_LOGIN_BODY_BYTES) -> bytes:
    """
    Read the request body, giving up as soon as it passes `limit` bytes.

    Chunked bodies carry no Content-Length, so the cap is enforced on the
    bytes actually received. The body is cached on the request the same way
    Request.body() caches it, so the handler behind the gate still sees it.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise LoginBodyTooLarge()

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise LoginBodyTooLarge()
        chunks.append(chunk)

    body = b"".join(chunks)
    request._body = body
    return body


async def extract_username(request: Request) -> Optional[str]:
    """Attempted login name from a JSON body; None when absent or unreadable."""
    body = await read_login_body(request)
    try:
        data = json.loads(body or b"null")
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(data, dict):
        return None
    for field in USERNAME_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()[:255]
    return None


def resolve_request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "")
    if REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


def apply_gate_headers(response: Response, request_id: str) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# ======================================================
# Per-request audit state
# ======================================================

class PendingAudit:
    """What the finalizer will write for this request. Local to one request."""

    def __init__(
        self,
        method: str,
        path: str,
        identity: ClientIdentity,
        is_auth: bool,
        audit_mutations: bool,
        request_id: str = "",
    ):
        self.method = method
        self.path = path
        self.identity = identity
        self.is_auth = is_auth
        self.request_id = request_id

        action, resource_type, resource_id = classify_request(method, path)
        if is_auth:
            action, resource_type, resource_id = ACTION_LOGIN, RESOURCE_AUTHENTICATION, None

        self.action = action
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.resource_title: Optional[str] = None
        self.actor_user_id = identity.authenticated_user_id
        self.actor_name = identity.username

        self.should_record = is_auth or (audit_mutations and method.upper() in MUTATING_METHODS)
        self.success = True
        self.error_message: Optional[str] = None
        self.status_code = 500
        self.decision = Decision.ALLOW
        self.reason: Optional[str] = None
        self.credential_failure = False

    def reject(self, outcome: GateOutcome, status_code: int) -> None:
        self.should_record = True
        self.decision = outcome.decision
        self.reason = outcome.reason
        self.status_code = status_code
        self.success = False
        self.error_message = outcome.reason
        self.action = REJECTION_ACTIONS[outcome.decision]
        self.resource_type = RESOURCE_SECURITY
        self.resource_id = None

    def complete(self, response: Response) -> None:
        self.status_code = response.status_code
        self.success = response.status_code < 400

        overrides = {
            name[len(AUDIT_HEADER_PREFIX):]: value
            for name, value in response.headers.items()
            if name.lower().startswith(AUDIT_HEADER_PREFIX)
        }
        for name in list(response.headers.keys()):
            if name.lower().startswith(AUDIT_HEADER_PREFIX):
                del response.headers[name]

        self.action = overrides.get("action", self.action)
        self.resource_type = overrides.get("resource-type", self.resource_type)
        self.resource_id = overrides.get("resource-id", self.resource_id)
        self.resource_title = overrides.get("resource-title")
        self.actor_user_id = overrides.get("actor-id", self.actor_user_id)
        self.actor_name = overrides.get("actor-name", self.actor_name)

        if not self.success:
            self.error_message = overrides.get("error") or f"HTTP {response.status_code}"

        if self.is_auth:
            if self.success:
                self.action = ACTION_LOGIN
            else:
                self.action = ACTION_LOGIN_FAILED
                self.credential_failure = 400 <= response.status_code < 500 and response.status_code != 429

    def fail(self, exc: BaseException) -> None:
        self.should_record = True
        self.success = False
        self.status_code = 500
        self.error_message = f"{type(exc).__name__}: {exc}"[:1000]
        if self.is_auth:
            self.action = ACTION_LOGIN_FAILED


class GateLogRecord(BaseModel):
    timestamp: str
    method: str
    path: str
    ip: str
    proxy_chain_trusted: bool
    user_agent: Optional[str]
    decision: str
    reason: Optional[str]
    status_code: int
    latency_ms: int
    request_id: str


# ======================================================
# Gate
# ======================================================

class SecurityGate:
    """
    identity -> block check -> rate limits -> handler -> audit

    Each check returns a GateOutcome; the first rejection short-circuits.
    The audit write runs in a finalizer on every exit path.
    """

    def __init__(
        self,
        registry,
        limiter,
        recorder,
        policy_provider,
        clock: Callable[[], float] = time.time,
        admin_path_prefix: str = "/security",
    ):
        self._registry = registry
        self._limiter = limiter
        self._recorder = recorder
        self._policy = policy_provider
        self._clock = clock
        self._admin_path_prefix = admin_path_prefix

    # --------------------------------------------------
    # Steps
    # --------------------------------------------------

    def check_block(self, identity: ClientIdentity, policy: SecurityPolicy) -> GateOutcome:
        try:
            status = self._registry.check(identity.ip)
        except StoreUnavailable as e:
            return self._store_failure("block check", e, identity, policy)

        if status.blocked:
            return blocked(status.block)
        return allow()

    def check_rate_limits(
        self,
        identity: ClientIdentity,
        method: str,
        path: str,
        policy: SecurityPolicy,
    ) -> GateOutcome:
        try:
            results = self._limiter.check_tiers(
                policy.tiers,
                method=method,
                path=path,
                ip=identity.ip,
                username=identity.username,
            )
        except StoreUnavailable as e:
            return self._store_failure("rate limit", e, identity, policy)

        if any(not r.allowed for r in results):
            return rate_limited(results)
        return allow(results)

    def _store_failure(
        self,
        step: str,
        error: StoreUnavailable,
        identity: ClientIdentity,
        policy: SecurityPolicy,
    ) -> GateOutcome:
        logger.error(
            f"Shared store unavailable during {step} for ip={identity.ip}: {error} "
            f"(fail_open={policy.fail_open})"
        )
        if policy.fail_open:
            return allow(reason=f"{step} skipped: store unavailable")
        return unavailable(step)

    # --------------------------------------------------
    # Pipeline
    # --------------------------------------------------

    async def process(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()
        policy = self._policy.current
        method = request.method.upper()
        path = request.url.path

        identity = resolve_identity(request, policy.trusted_proxy_hops)
        request_id = resolve_request_id(request)
        request.state.client_ip = identity.ip
        request.state.request_id = request_id
        is_auth = method == "POST" and policy.is_auth_path(path)
        body_too_large = False
        if is_auth:
            try:
                identity.username = await extract_username(request)
            except LoginBodyTooLarge:
                body_too_large = True

        pending = PendingAudit(
            method,
            path,
            identity,
            is_auth=is_auth,
            audit_mutations=not path.startswith(self._admin_path_prefix),
            request_id=request_id,
        )

        async with self.audit_scope(pending, started):
            # Store and database calls are blocking; they run on the worker pool
            outcome = await run_in_threadpool(self.check_block, identity, policy)
            if outcome.rejected:
                return self._reject(outcome, pending)

            if body_too_large:
                return self._reject(payload_too_large(MAX_LOGIN_BODY_BYTES), pending)

            outcome = await run_in_threadpool(self.check_rate_limits, identity, method, path, policy)
            if outcome.rejected:
                return self._reject(outcome, pending)

            pending.reason = outcome.reason
            response = await call_next(request)
            pending.complete(response)

            tightest = outcome.tightest_limit
            if tightest is not None:
                response.headers.update(rate_limit_headers(tightest))
            return apply_gate_headers(response, request_id)

    def _reject(self, outcome: GateOutcome, pending: PendingAudit) -> Response:
        response = to_response(outcome, self._now())
        pending.reject(outcome, response.status_code)
        return apply_gate_headers(response, pending.request_id)

    @asynccontextmanager
    async def audit_scope(self, pending: PendingAudit, started: float) -> AsyncIterator[PendingAudit]:
        try:
            yield pending
        except BaseException as e:
            # includes cancellation; the finalizer still records the attempt
            pending.fail(e)
            raise
        finally:
            # the worker thread runs to completion even if the request is cancelled
            await run_in_threadpool(self._finalize, pending, started)

    def _finalize(self, pending: PendingAudit, started: float) -> None:
        identity = pending.identity
        try:
            if pending.should_record:
                self._recorder.record(
                    action=pending.action,
                    resource_type=pending.resource_type,
                    resource_id=pending.resource_id,
                    resource_title=pending.resource_title,
                    success=pending.success,
                    error_message=pending.error_message,
                    actor_user_id=pending.actor_user_id,
                    actor_name=pending.actor_name,
                    ip=identity.ip,
                    user_agent=identity.user_agent,
                    details=f"{pending.method} {pending.path} request_id={pending.request_id}",
                )

            if pending.credential_failure:
                self._track_failure(identity)
            elif pending.is_auth and pending.success and identity.username:
                self._recorder.clear_user_failures(identity.username)

        except StoreUnavailable as e:
            logger.error(f"Failure tracking skipped for ip={identity.ip}: {e}")
        except Exception:
            logger.exception(f"Audit finalizer failed for {pending.method} {pending.path}")

        record = GateLogRecord(
            timestamp=self._now().isoformat(),
            method=pending.method,
            path=pending.path,
            ip=identity.ip,
            proxy_chain_trusted=identity.proxy_chain_trusted,
            user_agent=identity.user_agent or None,
            decision=pending.decision.value,
            reason=pending.reason,
            status_code=pending.status_code,
            latency_ms=int((time.monotonic() - started) * 1000),
            request_id=pending.request_id,
        )
        logger.info(record.model_dump_json())

    def _track_failure(self, identity: ClientIdentity) -> None:
        counts = self._recorder.record_failure(identity.ip, identity.username)
        block = self._registry.evaluate_failures(identity.ip, counts.ip_failures)
        if block is None:
            return

        # A fresh block starts a fresh count once it expires
        self._recorder.clear_ip_failures(identity.ip)
        self._recorder.record(
            action=ACTION_IP_BLOCKED,
            resource_type=RESOURCE_SECURITY,
            resource_id=identity.ip,
            success=True,
            ip=identity.ip,
            user_agent=identity.user_agent,
            actor_name=identity.username,
            details=block.detail,
            new_values=block.model_dump(mode="json"),
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)


# ======================================================
# Middleware
# ======================================================

class SecurityGateMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, gate: SecurityGate, exempt_paths=("/health",)):
        super().__init__(app)
        self.gate = gate
        self.exempt_paths = set(exempt_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # CORS preflight and health checks bypass the gate entirely
        if request.method == "OPTIONS" or request.url.path in self.exempt_paths:
            return await call_next(request)
        return await self.gate.process(request, call_next)
