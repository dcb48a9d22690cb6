# gateway/proxy.py
import asyncio
import logging
from collections.abc import Awaitable

import httpx
from fastapi import Request
from fastapi.responses import Response

import router
from backends import BackendConfig, RelayMode
from config import settings
from errors import (
    ClientDisconnected,
    GatewayConstructionError,
    PayloadTooLarge,
    UpstreamUnreachable,
)
from headers import forward_headers
from relay import relay

logger = logging.getLogger(__name__)

# Methods safe to replay when the first connection attempt never reached upstream.
_IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}

_DISCONNECT_POLL_INTERVAL = 0.5  # seconds

# nginx's "client closed request"; never seen by the client itself.
_CLIENT_CLOSED_REQUEST = 499


def new_backend_client(backend: BackendConfig) -> httpx.AsyncClient:
    """Pooled client for one backend. Redirects are handed back to the caller."""
    return httpx.AsyncClient(timeout=backend.timeout, follow_redirects=backend.follow_redirects)


def _raw_path(request: Request) -> str:
    """Inbound path with its percent-encoding intact.

    The decoded path would turn %3F, %23 and %2F inside a segment into URL
    syntax on the upstream side.
    """
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.decode("latin-1").partition("?")[0]


async def _cancel_on_disconnect(request: Request, call: Awaitable[httpx.Response]) -> httpx.Response:
    """Await the upstream call, cancelling it if the inbound client hangs up."""
    task = asyncio.ensure_future(call)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
            await asyncio.wait({task})


async def _send(
    request: Request,
    client: httpx.AsyncClient,
    proxy_req: httpx.Request,
    timeout: float,
) -> httpx.Response:
    attempts = 1
    if settings.upstream_retry_enabled and proxy_req.method in _IDEMPOTENT_METHODS:
        attempts = 2

    attempt = 1
    while True:
        try:
            return await _cancel_on_disconnect(
                request, asyncio.wait_for(client.send(proxy_req, stream=True), timeout)
            )
        except httpx.ConnectError as exc:
            # ConnectError: the request never left the gateway.
            if attempt >= attempts:
                raise
            attempt += 1
            logger.warning(
                "Connect to %s failed (%s); retrying once in %.2fs",
                proxy_req.url, exc, settings.upstream_retry_backoff,
            )
            await asyncio.sleep(settings.upstream_retry_backoff)


async def forward(request: Request, backend: BackendConfig) -> Response:
    path = _raw_path(request)
    max_body = settings.max_body_bytes

    # Enforce body size limit before reading into memory.
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_body:
        raise PayloadTooLarge("Request body too large")

    body = await request.body()
    if len(body) > max_body:
        raise PayloadTooLarge("Request body too large")

    # Query string is copied verbatim; only the path is rewritten.
    target = router.upstream_url(backend, path, request.url.query)

    client: httpx.AsyncClient = request.app.state.backend_clients[backend.name]
    try:
        proxy_req = client.build_request(
            method=request.method,
            url=target,
            headers=forward_headers(request, backend),
            content=body,
        )
    except (httpx.InvalidURL, ValueError) as exc:
        logger.error("Failed to create proxy request for %s: %s", target, exc)
        raise GatewayConstructionError("Failed to create proxy request", message=str(exc))

    logger.info(
        "Proxying request method=%s from=%s to=%s backend=%s",
        request.method, path, target, backend.name,
    )

    # The backend timeout bounds the whole exchange, body transfer included.
    deadline = asyncio.get_running_loop().time() + backend.timeout
    try:
        upstream = await _send(request, client, proxy_req, backend.timeout)
    except ClientDisconnected:
        logger.info("Client disconnected; cancelled %s %s", request.method, target)
        return Response(status_code=_CLIENT_CLOSED_REQUEST)
    except asyncio.TimeoutError:
        logger.error("Proxy request timed out after %.1fs: %s", backend.timeout, target)
        raise UpstreamUnreachable(
            f"Failed to reach {backend.name} API",
            message=f"timed out after {backend.timeout:g}s",
        )
    except httpx.HTTPError as exc:
        logger.error("Proxy request failed for %s: %s", target, exc)
        raise UpstreamUnreachable(
            f"Failed to reach {backend.name} API", message=str(exc) or type(exc).__name__
        )

    if upstream.status_code >= 500:
        logger.error(
            "Upstream error %s for %s %s (backend=%s)",
            upstream.status_code, request.method, path, backend.name,
        )

    response = await relay(upstream, backend, target, deadline)
    if backend.relay_mode is RelayMode.STREAM:
        request.state.verbatim_headers = True
    logger.info("Proxy response status=%s url=%s", response.status_code, target)
    return response
