# gateway/health.py
import asyncio
import logging
from typing import Any

import httpx

from backends import BackendConfig, BackendRegistry

logger = logging.getLogger(__name__)


async def probe(backend: BackendConfig, client: httpx.AsyncClient) -> tuple[int, dict[str, Any]]:
    """GET {base_url}/health directly, skipping path rewrite and header policy.

    Returns (gateway status code, body). Any HTTP answer counts as "up"; only
    transport failures count as "down".
    """
    target = backend.base_url.rstrip("/") + "/health"
    try:
        resp = await client.get(target, timeout=backend.timeout)
    except httpx.HTTPError as exc:
        logger.warning("Health check failed for %s (%s): %s", backend.name, target, exc)
        return 503, {
            "status": "down",
            "api_url": backend.base_url,
            "message": str(exc) or type(exc).__name__,
            "error": f"{backend.display_name} API is not reachable",
        }
    return 200, {
        "status": "up",
        "api_url": backend.base_url,
        "code": resp.status_code,
    }


async def probe_all(
    registry: BackendRegistry, clients: dict[str, httpx.AsyncClient]
) -> tuple[int, dict[str, Any]]:
    """Probe every backend concurrently and summarise."""
    backends = list(registry)
    results = await asyncio.gather(*(probe(b, clients[b.name]) for b in backends))
    body = {b.name: result for b, (_, result) in zip(backends, results)}
    healthy = all(status == 200 for status, _ in results)
    return (200 if healthy else 503), {
        "status": "up" if healthy else "down",
        "backends": body,
    }
