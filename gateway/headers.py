# gateway/headers.py
"""Header policy at the gateway boundary.

Forward direction (client → upstream) follows the backend's ForwardPolicy:

  ALL         every inbound header except hop-by-hop / Host / Content-Length,
              then X-Forwarded-For, X-Forwarded-Proto and X-Forwarded-Host are
              overwritten from the actual connection. Client-supplied values
              for those three are never trusted.
  ALLOW_LIST  only the headers in the backend's allow-list
              (Authorization and Content-Type by default).

Return direction (upstream → client) follows the backend's ReturnPolicy:

  ALL                upstream headers verbatim, minus hop-by-hop headers.
  CONTENT_TYPE_ONLY  nothing from upstream except its own Content-Type, copied
                     exactly, or no Content-Type at all when upstream sent
                     none. CORS headers keep a single authority.
"""
from typing import Iterable

import httpx
from fastapi import Request

from backends import BackendConfig, ForwardPolicy, ReturnPolicy

# RFC 7230 §6.1: these describe a single connection and are never relayed.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# httpx derives these from the target URL and the body it sends.
_STRIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

_FORWARDED_HEADERS = {"x-forwarded-for", "x-forwarded-proto", "x-forwarded-host"}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def forward_headers(request: Request, backend: BackendConfig) -> list[tuple[str, str]]:
    """Build the outbound header list for a proxied request.

    Returned as an ordered list of pairs so repeated headers survive.
    """
    items: Iterable[tuple[str, str]] = request.headers.items()

    if backend.forward_policy is ForwardPolicy.ALLOW_LIST:
        return [(k, v) for k, v in items if k.lower() in backend.allow_list]

    headers = [
        (k, v)
        for k, v in items
        if k.lower() not in _STRIP_REQUEST_HEADERS and k.lower() not in _FORWARDED_HEADERS
    ]
    headers.append(("x-forwarded-for", _client_ip(request)))
    headers.append(("x-forwarded-proto", request.url.scheme))
    headers.append(("x-forwarded-host", request.headers.get("host", "")))
    return headers


def return_headers(upstream: httpx.Response, backend: BackendConfig) -> list[tuple[bytes, bytes]]:
    """Build the raw client-facing header list for an upstream response."""
    if backend.return_policy is ReturnPolicy.CONTENT_TYPE_ONLY:
        content_type = upstream.headers.get("content-type")
        if content_type is None:
            return []
        return [(b"content-type", content_type.encode("latin-1"))]
    return [
        (k, v)
        for k, v in upstream.headers.raw
        if k.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
    ]
