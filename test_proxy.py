from unittest.mock import AsyncMock, patch

import httpx
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from proxy import forward_request


def make_client(request_id=None):
    app = FastAPI()

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def relay(path: str, request: Request):
        return await forward_request(
            request=request,
            upstream_url=f"http://content.internal/{path}",
            client_ip="203.0.113.7",
            request_id=request_id,
        )

    return TestClient(app)


def test_forwards_request_and_filters_hop_by_hop_headers():
    upstream = httpx.Response(
        201,
        content=b'{"id": 1}',
        headers={"content-type": "application/json", "connection": "keep-alive", "x-backend": "yes"},
    )

    with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=upstream) as mock_request:
        resp = make_client().post(
            "/api/comments?draft=1",
            content=b'{"body":"hi"}',
            headers={"content-type": "application/json", "x-forwarded-for": "1.2.3.4", "connection": "close"},
        )

    assert resp.status_code == 201
    assert resp.json() == {"id": 1}
    assert resp.headers["x-backend"] == "yes"

    kwargs = mock_request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"] == "http://content.internal/api/comments"
    assert kwargs["headers"]["x-forwarded-for"] == "203.0.113.7"
    assert "connection" not in kwargs["headers"]
    assert kwargs["content"] == b'{"body":"hi"}'


def test_unreachable_upstream_is_502():
    with patch(
        "httpx.AsyncClient.request",
        new_callable=AsyncMock,
        side_effect=httpx.ConnectError("refused"),
    ):
        resp = make_client().get("/api/posts")

    assert resp.status_code == 502
    assert "ConnectError" in resp.json()["detail"]


def test_request_id_travels_upstream():
    upstream = httpx.Response(200, content=b"{}", headers={"content-type": "application/json"})

    with patch("httpx.AsyncClient.request", new_callable=AsyncMock, return_value=upstream) as mock_request:
        make_client(request_id="req-7").get("/api/posts", headers={"x-request-id": "spoofed"})

    assert mock_request.call_args.kwargs["headers"]["x-request-id"] == "req-7"
