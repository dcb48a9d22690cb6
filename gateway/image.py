# gateway/image.py
"""Image fetch sub-proxy.

Fetches an arbitrary absolute http(s) URL on behalf of the browser so catalog
artwork can be shown from the gateway's origin. Many image hosts reject
requests without a browser User-Agent or with a foreign Referer (hot-link
protection); the fetch therefore presents itself as a browser that came from
the image host's own site. This Referer spoofing is deliberate policy: it is
the reason this endpoint exists. It is limited to GET of assets and is never
applied to backend API calls.
"""
import logging
from collections.abc import AsyncIterator

import httpx
from fastapi.responses import StreamingResponse

from errors import ClientInputError, UpstreamProtocolError, UpstreamUnreachable

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8"
CACHE_CONTROL = "public, max-age=86400"
DEFAULT_IMAGE_TYPE = "application/octet-stream"


def new_image_client(timeout: float) -> httpx.AsyncClient:
    """Client for third-party image hosts.

    Follows redirects (CDNs bounce a lot), unlike the backend clients, and
    uses its own pool so the two redirect policies never mix.
    """
    return httpx.AsyncClient(follow_redirects=True, timeout=timeout)


def parse_image_url(raw: str | None) -> httpx.URL:
    """Validate the client-supplied URL; raise ClientInputError if unusable."""
    if not raw:
        raise ClientInputError("Missing url parameter")
    try:
        url = httpx.URL(raw)
    except httpx.InvalidURL:
        raise ClientInputError("Invalid URL")
    if url.scheme not in ("http", "https") or not url.host:
        raise ClientInputError("Invalid URL")
    return url


def spoofed_headers(url: httpx.URL) -> dict[str, str]:
    """Browser-like request headers with a Referer on the target's own origin."""
    origin = f"{url.scheme}://{url.host}"
    if url.port is not None:
        origin += f":{url.port}"
    return {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": IMAGE_ACCEPT,
        "Referer": origin + "/",
    }


async def fetch_image(raw_url: str | None, client: httpx.AsyncClient) -> StreamingResponse:
    url = parse_image_url(raw_url)

    try:
        upstream = await client.send(
            client.build_request("GET", url, headers=spoofed_headers(url)),
            stream=True,
        )
    except httpx.HTTPError as exc:
        logger.error("Failed to fetch image %s: %s", url, exc)
        raise UpstreamUnreachable("Failed to fetch image", message=str(exc))

    if upstream.status_code != 200:
        await upstream.aclose()
        logger.warning("Image host returned %s for %s", upstream.status_code, url)
        raise UpstreamProtocolError("Upstream returned non-200 status", code=upstream.status_code)

    content_type = upstream.headers.get("content-type") or DEFAULT_IMAGE_TYPE

    async def body_iter() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            logger.error("Image stream from %s broke: %s", url, exc)
            raise
        finally:
            await upstream.aclose()

    logger.info("Proxying image %s (%s)", url, content_type)
    return StreamingResponse(
        body_iter(),
        status_code=200,
        media_type=content_type,
        headers={"Cache-Control": CACHE_CONTROL},
    )
