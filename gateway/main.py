# gateway/main.py
"""Gateway application: routes, middleware and HTTP client lifecycle.

Run with uvicorn from the repository root:

    uvicorn main:app --app-dir gateway --host 0.0.0.0 --port 8080

Two response headers come from the gateway rather than the upstream:

- x-request-id is added to every gateway-built response, DecodeJSON
  responses included, so those carry it next to their Content-Type.
  Stream-mode relays are left without it.
- CORSMiddleware answers for requests that carry an Origin header. On a
  Stream-mode relay its Access-Control-* headers replace upstream's own.
"""
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

import health
import image
import proxy
import router
from backends import BackendConfig, build_registry
from config import settings
from errors import GatewayError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

API_PREFIX = "/" + settings.api_prefix.strip("/")

_PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail fast: a backend without a base URL must stop startup.
    registry = build_registry(settings)
    app.state.registry = registry

    # One pooled client per backend, reused across all requests to it.
    app.state.backend_clients = {b.name: proxy.new_backend_client(b) for b in registry}
    # Separate pool: image fetches follow redirects, backend calls do not.
    app.state.image_client = image.new_image_client(settings.image_fetch_timeout)
    logger.info("HTTP clients initialised for %s", ", ".join(registry.names()) or "no backends")

    yield

    for client in app.state.backend_clients.values():
        await client.aclose()
    await app.state.image_client.aclose()


app = FastAPI(title="Catalog Gateway", version="1.0.0", lifespan=lifespan)

# The only place cross-origin headers are set for gateway-owned responses.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Propagate or generate an X-Request-ID header for end-to-end tracing."""
    req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = req_id
    response = await call_next(request)
    # Stream-mode relays pass upstream headers through untouched.
    if not getattr(request.state, "verbatim_headers", False):
        response.headers["x-request-id"] = req_id
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.warning(
        "%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.error
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _backend(request: Request, name: str) -> BackendConfig | None:
    return request.app.state.registry.get(name)


def _unknown_backend(name: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Unknown backend '{name}'"})


@app.get("/health")
async def gateway_health() -> dict[str, str]:
    return {"status": "ok"}


@app.get(f"{API_PREFIX}/health")
async def backends_health(request: Request) -> JSONResponse:
    status, body = await health.probe_all(
        request.app.state.registry, request.app.state.backend_clients
    )
    return JSONResponse(status_code=status, content=body)


@app.get(API_PREFIX + "/{backend_name}/health")
async def backend_health(backend_name: str, request: Request) -> JSONResponse:
    backend = _backend(request, backend_name)
    if backend is None:
        return _unknown_backend(backend_name)
    status, body = await health.probe(backend, request.app.state.backend_clients[backend.name])
    return JSONResponse(status_code=status, content=body)


@app.get(API_PREFIX + "/{backend_name}/image")
async def backend_image(backend_name: str, request: Request) -> Response:
    backend = _backend(request, backend_name)
    if backend is None:
        return _unknown_backend(backend_name)
    if not backend.serves_images:
        # No asset proxy here; /image belongs to the upstream API.
        return await proxy.forward(request, backend)
    return await image.fetch_image(
        request.query_params.get("url"), request.app.state.image_client
    )


@app.api_route(API_PREFIX + "/{backend_name}", methods=_PROXY_METHODS)
@app.api_route(API_PREFIX + "/{backend_name}/{path:path}", methods=_PROXY_METHODS)
async def catchall(request: Request, backend_name: str, path: str = "") -> Response:
    backend = router.backend_for_path(request.url.path, request.app.state.registry)
    if backend is None:
        return _unknown_backend(backend_name)
    return await proxy.forward(request, backend)
