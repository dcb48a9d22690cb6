# gateway/router.py
import httpx

from backends import BackendConfig, BackendRegistry
from errors import GatewayConstructionError


def matches_prefix(path: str, prefix: str) -> bool:
    """Return True if path is prefix itself or a /-bounded sub-path of it."""
    return path == prefix or path.startswith(prefix + "/")


def backend_for_path(path: str, registry: BackendRegistry) -> BackendConfig | None:
    """Return the backend whose gateway route prefix owns the given path."""
    for backend in registry:
        if matches_prefix(path, backend.strip_prefix):
            return backend
    return None


def rewrite_path(path: str, strip_prefix: str, add_prefix: str) -> str:
    """Map an inbound gateway path onto the upstream path layout.

    /api/v1/anime            → /otakudesu
    /api/v1/anime/           → /otakudesu
    /api/v1/anime/home       → /otakudesu/home
    /api/v1/anime/genres/    → /otakudesu/genres/

    A path that does not start with strip_prefix is used as-is, as if it were
    already relative to the backend root. Callers route by prefix before
    rewriting, so this only matters for direct use.
    """
    remainder = path[len(strip_prefix):] if path.startswith(strip_prefix) else path
    base = add_prefix.rstrip("/")
    suffix = remainder.lstrip("/")
    if not suffix:
        return base or "/"
    # Trailing slashes are kept: some upstreams route /x and /x/ differently.
    return f"{base}/{suffix}"


def upstream_url(backend: BackendConfig, path: str, query: str = "") -> str:
    """Resolve the absolute upstream URL for an inbound path and raw query.

    Raises GatewayConstructionError when the result is not a well-formed
    absolute http(s) URL; nothing has been sent at that point.
    """
    target = backend.base_url.rstrip("/") + rewrite_path(
        path, backend.strip_prefix, backend.add_prefix
    )
    if query:
        target += f"?{query}"

    try:
        url = httpx.URL(target)
    except httpx.InvalidURL as exc:
        raise GatewayConstructionError("Invalid target URL", message=str(exc))
    if url.scheme not in ("http", "https") or not url.host:
        raise GatewayConstructionError(
            "Invalid target URL", message=f"not an absolute http(s) URL: {target}"
        )
    return target
