# gateway/relay.py
"""Turn an upstream response into the client-facing response.

Two strategies, chosen per backend at configuration time:

STREAM       status and headers verbatim, body copied chunk by chunk as it
             arrives. A failure before the first chunk becomes a 502; a
             failure after bytes went out can only drop the connection.
DECODE_JSON  JSON bodies are buffered, parsed and re-encoded with only a
             gateway-chosen Content-Type. Anything else is streamed through
             with upstream's status and content type and no other headers.

The upstream response is closed on every exit path so its connection goes
back to the backend pool.
"""
import asyncio
import enum
import json
import logging
import math
from collections.abc import AsyncIterator

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from backends import BackendConfig, RelayMode
from errors import StreamingFailure, UpstreamProtocolError, UpstreamUnreachable
from headers import return_headers

logger = logging.getLogger(__name__)


class RelayState(enum.Enum):
    PENDING = "pending"
    FORWARDING = "forwarding"
    COMPLETE = "complete"
    FAILED = "failed"


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise httpx.ReadTimeout("upstream round trip exceeded its deadline")
    return remaining


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    return await anext(chunks, None)


async def _read_chunk(chunks: AsyncIterator[bytes], deadline: float | None) -> bytes | None:
    timeout = _remaining(deadline)
    try:
        return await asyncio.wait_for(_next_chunk(chunks), timeout)
    except asyncio.TimeoutError:
        raise httpx.ReadTimeout("upstream round trip exceeded its deadline")


async def stream_body(
    upstream: httpx.Response,
    status_code: int,
    raw_headers: list[tuple[bytes, bytes]],
    target: str,
    deadline: float | None = None,
) -> StreamingResponse:
    """Relay the upstream body without buffering it.

    The first chunk is read before the response is built so that an upstream
    failing right away still gets a proper 502 instead of a committed status.
    """
    chunks = upstream.aiter_raw()
    try:
        first = await _read_chunk(chunks, deadline)
    except httpx.HTTPError as exc:
        await upstream.aclose()
        logger.error("Relay %s before first byte: %s (url=%s)", RelayState.FAILED.value, exc, target)
        raise UpstreamUnreachable("Upstream failed before sending a body", message=str(exc))
    except BaseException:
        await upstream.aclose()
        raise

    async def body_iter() -> AsyncIterator[bytes]:
        sent = 0
        state = RelayState.FORWARDING
        try:
            chunk = first
            while chunk is not None:
                if chunk:
                    sent += len(chunk)
                    yield chunk
                chunk = await _read_chunk(chunks, deadline)
            state = RelayState.COMPLETE
        except httpx.HTTPError as exc:
            state = RelayState.FAILED
            # Status line is already on the wire; dropping the connection is
            # the only signal left for the client.
            logger.error("Relay %s after %d bytes: %s (url=%s)", state.value, sent, exc, target)
            raise StreamingFailure(f"upstream failed after {sent} bytes: {exc}") from exc
        finally:
            await upstream.aclose()
            logger.debug("Relay %s: %d bytes from %s", state.value, sent, target)

    response = StreamingResponse(body_iter(), status_code=status_code)
    response.raw_headers = list(raw_headers)
    return response


def _reject_constant(name: str) -> float:
    # NaN and Infinity parse in Python but cannot be re-encoded as JSON.
    raise ValueError(f"{name} is not a valid JSON number")


def _finite_float(value: str) -> float:
    number = float(value)
    if math.isinf(number):
        raise ValueError(f"{value} overflows a JSON number")
    return number


async def decode_json(
    upstream: httpx.Response,
    backend: BackendConfig,
    target: str,
    deadline: float | None = None,
) -> Response:
    content_type = upstream.headers.get("content-type", "")
    if "application/json" not in content_type:
        # Safety net for images or raw text: upstream status and its exact
        # content type, none of upstream's other headers.
        return await stream_body(
            upstream, upstream.status_code, return_headers(upstream, backend), target, deadline
        )

    try:
        timeout = _remaining(deadline)
        body = await asyncio.wait_for(upstream.aread(), timeout)
    except asyncio.TimeoutError:
        raise UpstreamUnreachable(
            f"Failed to reach {backend.name} API", message="upstream round trip exceeded its deadline"
        )
    except httpx.HTTPError as exc:
        raise UpstreamUnreachable(f"Failed to reach {backend.name} API", message=str(exc))
    finally:
        await upstream.aclose()

    try:
        result = json.loads(body, parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError as exc:
        logger.error("Failed to decode upstream JSON from %s: %s", target, exc)
        raise UpstreamProtocolError("Invalid JSON from upstream")

    return JSONResponse(content=result, status_code=upstream.status_code)


async def relay(
    upstream: httpx.Response,
    backend: BackendConfig,
    target: str,
    deadline: float | None = None,
) -> Response:
    """Produce the client response according to the backend's relay mode."""
    if backend.relay_mode is RelayMode.DECODE_JSON:
        return await decode_json(upstream, backend, target, deadline)
    return await stream_body(
        upstream, upstream.status_code, return_headers(upstream, backend), target, deadline
    )
