import httpx
from typing import Dict, Optional

from fastapi import HTTPException, Request, Response, status


HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",  # Let httpx set the host header based on URL
    "content-length",
    "content-encoding",
}


def _filter_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """
    Remove hop-by-hop headers as per RFC 2616.
    These must not be forwarded by proxies.
    """
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
    }


async def forward_request(
    *,
    request: Request,
    upstream_url: str,
    client_ip: str,
    timeout: float = 30.0,
    request_id: Optional[str] = None,
) -> Response:
    """
    Forward an admitted request to the content backend and relay its
    response. The resolved client IP travels upstream as X-Forwarded-For,
    the gate's request id as X-Request-ID.
    """
    headers = _filter_headers(dict(request.headers))
    headers["x-forwarded-for"] = client_ip
    if request_id:
        headers["x-request-id"] = request_id

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.request(
                method=request.method,
                url=upstream_url,
                headers=headers,
                params=request.query_params,
                content=await request.body(),
            )
    except httpx.RequestError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Upstream service unreachable: {type(e).__name__}",
        )

    return Response(
        content=r.content,
        status_code=r.status_code,
        headers=_filter_headers(dict(r.headers)),
        media_type=r.headers.get("content-type"),
    )
