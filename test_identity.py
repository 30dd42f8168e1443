import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from identity import normalize_ip, resolve_client_ip, resolve_identity


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("203.0.113.7", "203.0.113.7"),
        (" 203.0.113.7 ", "203.0.113.7"),
        ("203.0.113.7:8443", "203.0.113.7"),
        ("[2001:db8::1]:443", "2001:db8::1"),
        ("2001:DB8::1", "2001:db8::1"),
        ("not-an-ip", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_ip(raw, expected):
    assert normalize_ip(raw) == expected


def test_zero_hops_ignores_forwarding_headers():
    ip, trusted = resolve_client_ip("10.0.0.5", "198.51.100.1", "198.51.100.2", trusted_hops=0)
    assert ip == "10.0.0.5"
    assert trusted is False


def test_one_hop_takes_address_seen_by_proxy():
    # client spoofs the left-most entry; our proxy appended the real address
    ip, trusted = resolve_client_ip("10.0.0.5", "1.2.3.4, 198.51.100.1", trusted_hops=1)
    assert ip == "198.51.100.1"
    assert trusted is True


def test_two_hops():
    ip, trusted = resolve_client_ip("10.0.0.5", "198.51.100.1, 10.0.0.9", trusted_hops=2)
    assert ip == "198.51.100.1"
    assert trusted is True


def test_chain_shorter_than_hops_falls_back_to_peer():
    ip, trusted = resolve_client_ip("10.0.0.5", "198.51.100.1", trusted_hops=3)
    assert ip == "10.0.0.5"
    assert trusted is False


def test_malformed_entry_falls_back_to_peer():
    ip, trusted = resolve_client_ip("10.0.0.5", "garbage", trusted_hops=1)
    assert ip == "10.0.0.5"
    assert trusted is False


def test_real_ip_used_without_forwarded_for():
    ip, trusted = resolve_client_ip("10.0.0.5", None, "198.51.100.9", trusted_hops=1)
    assert ip == "198.51.100.9"
    assert trusted is True


def test_missing_peer_is_unknown_bucket():
    ip, trusted = resolve_client_ip(None, None, trusted_hops=0)
    assert ip == "unknown"
    assert trusted is False


def test_resolve_identity_from_request():
    app = FastAPI()

    @app.get("/who")
    def who(request: Request):
        request.state.user_id = "u-1"
        identity = resolve_identity(request, trusted_hops=1)
        return identity.model_dump()

    client = TestClient(app)
    resp = client.get(
        "/who",
        headers={"x-forwarded-for": "198.51.100.1", "user-agent": "x" * 600},
    )

    body = resp.json()
    assert body["ip"] == "198.51.100.1"
    assert body["proxy_chain_trusted"] is True
    assert len(body["user_agent"]) == 512
    assert body["authenticated_user_id"] == "u-1"
    assert body["username"] is None
