import json
import threading
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi import Response
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from audit import AuditRecorder
from config import settings
from config_manager import PolicyManager, SecurityPolicy
from db import Base, build_engine
from ip_block import IPBlockRegistry
from rate_limit import RateLimiter, default_tiers
from redis.exceptions import ConnectionError as RedisConnectionError
from store import StoreUnavailable

import models  # noqa: F401  (registers the audit table)


START = 1_700_000_000.0
ADMIN_SECRET = "test-admin-secret"


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    """In-memory implementation of the shared store contract."""

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[object, Optional[float]]] = {}
        self.available = True

    def _check(self, operation: str) -> None:
        if not self.available:
            raise StoreUnavailable(operation, RedisConnectionError("connection refused"))

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_ms = entry
        if expires_ms is not None and self._now_ms() >= expires_ms:
            del self._values[key]
            return None
        return value

    def _expiry(self, ttl_ms: Optional[int]) -> Optional[float]:
        return self._now_ms() + ttl_ms if ttl_ms else None

    def incr_window(self, key: str, ttl_ms: int) -> int:
        self._check("incr_window")
        with self._lock:
            current = self._live(key)
            if current is None:
                self._values[key] = (1, self._expiry(ttl_ms))
                return 1
            _, expires_ms = self._values[key]
            self._values[key] = (current + 1, expires_ms)
            return current + 1

    def _trimmed_log(self, key: str, now_ms: int, window_ms: int) -> List[Tuple[int, str]]:
        log = self._live(key) or []
        return [(score, member) for score, member in log if score > now_ms - window_ms]

    def hit_sliding(self, key, now_ms, window_ms, limit, member):
        self._check("hit_sliding")
        with self._lock:
            log = self._trimmed_log(key, now_ms, window_ms)
            allowed = len(log) < limit
            if allowed:
                log.append((now_ms, member))
            self._values[key] = (log, self._expiry(window_ms))
            oldest = min(score for score, _ in log) if log else now_ms
            return allowed, len(log), oldest

    def add_event(self, key, now_ms, window_ms, member) -> int:
        self._check("add_event")
        with self._lock:
            log = self._trimmed_log(key, now_ms, window_ms)
            log.append((now_ms, member))
            self._values[key] = (log, self._expiry(window_ms))
            return len(log)

    def count_events(self, key, now_ms, window_ms) -> int:
        self._check("count_events")
        with self._lock:
            return len(self._trimmed_log(key, now_ms, window_ms))

    def put(self, key, value, ttl_ms=None) -> None:
        self._check("put")
        with self._lock:
            self._values[key] = (value, self._expiry(ttl_ms))

    def put_if_absent(self, key, value, ttl_ms=None) -> bool:
        self._check("put_if_absent")
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self._expiry(ttl_ms))
            return True

    def get(self, key):
        self._check("get")
        with self._lock:
            return self._live(key)

    def delete(self, *keys) -> int:
        self._check("delete")
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._values[key]
                    removed += 1
            return removed

    def scan_prefix(self, prefix):
        self._check("scan_prefix")
        with self._lock:
            found = []
            for key in list(self._values):
                value = self._live(key) if key.startswith(prefix) else None
                if value is not None:
                    found.append((key, value))
            return found

    def ping(self) -> bool:
        self._check("ping")
        return True


def make_policy(**overrides) -> SecurityPolicy:
    data = dict(
        tiers=default_tiers(auth_paths=["/api/auth/login"]),
        auth_paths=["/api/auth/login"],
        trusted_proxy_hops=1,
    )
    data.update(overrides)
    return SecurityPolicy(**data)


# =========================
# Fixtures
# =========================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def policy():
    return PolicyManager(make_policy())


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """SQLite on disk with a connection per thread, for concurrent writers."""
    engine = build_engine(f"sqlite:///{tmp_path / 'audit.db'}", timeout_seconds=30)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


@pytest.fixture
def registry(store, policy, clock):
    return IPBlockRegistry(store, policy, clock=clock)


@pytest.fixture
def recorder(session_factory, store, policy, clock):
    return AuditRecorder(session_factory, store=store, policy_provider=policy, clock=clock)


# =========================
# App with a fake content backend
# =========================

GOOD_PASSWORD = "correct-horse"


async def fake_content_backend(*, request, upstream_url, client_ip, timeout=30.0, request_id=None):
    """Stands in for the HTTP hop to the content backend."""
    path = request.url.path

    if path == "/api/auth/login":
        body = await request.json()
        if body.get("password") == GOOD_PASSWORD:
            return Response(content=b'{"token": "t"}', media_type="application/json")
        return Response(
            content=b'{"detail": "Invalid credentials"}',
            status_code=401,
            media_type="application/json",
        )

    if path == "/api/boom":
        raise RuntimeError("handler exploded")

    if path.startswith("/api/admin/posts/") and request.method == "PUT":
        return Response(
            content=b"{}",
            media_type="application/json",
            headers={
                "X-Audit-Resource-Title": "Hello world",
                "X-Audit-Actor-Id": "admin-1",
            },
        )

    return Response(
        content=json.dumps(
            {"upstream": upstream_url, "client_ip": client_ip, "request_id": request_id}
        ).encode(),
        media_type="application/json",
    )


def build_app(monkeypatch, store, session_factory, policy, clock, db_engine=None):
    import main

    monkeypatch.setattr(main, "forward_request", fake_content_backend)
    monkeypatch.setattr(settings, "ADMIN_SHARED_SECRET", ADMIN_SECRET)
    return main.create_app(
        store=store,
        session_factory=session_factory,
        db_engine=db_engine,
        policy_provider=policy,
        clock=clock,
        content_backend_url="http://content.internal",
    )


@pytest.fixture
def app(store, session_factory, db_engine, policy, clock, monkeypatch):
    return build_app(monkeypatch, store, session_factory, policy, clock, db_engine=db_engine)


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_headers():
    return {"x-admin-secret": ADMIN_SECRET, "x-admin-id": "admin-1"}
