# gateway/test_main.py
import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from backends import BackendConfig, BackendRegistry, ForwardPolicy, RelayMode, ReturnPolicy
from errors import ConfigurationError
from main import app, lifespan

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _backend(name, add_prefix, relay_mode, serves_images=False) -> BackendConfig:
    stream = relay_mode is RelayMode.STREAM
    return BackendConfig(
        name=name,
        base_url=f"http://{name}:3000",
        strip_prefix=f"/api/v1/{name}",
        add_prefix=add_prefix,
        timeout=30.0,
        relay_mode=relay_mode,
        forward_policy=ForwardPolicy.ALL if stream else ForwardPolicy.ALLOW_LIST,
        return_policy=ReturnPolicy.ALL if stream else ReturnPolicy.CONTENT_TYPE_ONLY,
        serves_images=serves_images,
    )


REGISTRY = BackendRegistry([
    _backend("anime", "/otakudesu", RelayMode.STREAM, serves_images=True),
    _backend("manga", "/api/manga", RelayMode.DECODE_JSON, serves_images=True),
    _backend("chapter", "/api/chapter", RelayMode.DECODE_JSON),
])


def _refused(request):
    raise httpx.ConnectError("[Errno 111] Connection refused")


class _Upstreams:
    """MockTransport-backed clients standing in for every upstream."""

    def __init__(self):
        self.handlers = {}
        self.calls = {}

    def client(self, name: str, **kwargs) -> httpx.AsyncClient:
        def dispatch(request):
            self.calls.setdefault(name, []).append(request)
            return self.handlers.get(name, _refused)(request)

        return httpx.AsyncClient(transport=httpx.MockTransport(dispatch), **kwargs)


def _fake_settings(**overrides):
    base = dict(
        api_prefix="/api/v1",
        enabled_backends_set={"anime", "manga"},
        anime_api_base_url="http://anime:3001",
        manga_api_base_url="http://manga:3002",
        chapter_api_base_url="",
        anime_api_timeout=30.0,
        manga_api_timeout=30.0,
        chapter_api_timeout=30.0,
        image_fetch_timeout=10.0,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def upstreams():
    ups = _Upstreams()
    app.state.registry = REGISTRY
    app.state.backend_clients = {b.name: ups.client(b.name) for b in REGISTRY}
    app.state.image_client = ups.client("image", follow_redirects=True)
    yield ups
    for c in app.state.backend_clients.values():
        await c.aclose()
    await app.state.image_client.aclose()


@pytest.fixture
async def client(upstreams):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


# ---------------------------------------------------------------------------
# /health
# ---------------------------------------------------------------------------

class TestGatewayHealth:
    async def test_returns_ok(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_request_id_generated(self, client):
        resp = await client.get("/health")
        assert resp.headers["x-request-id"]

    async def test_request_id_propagated(self, client):
        resp = await client.get("/health", headers={"x-request-id": "trace-123"})
        assert resp.headers["x-request-id"] == "trace-123"


# ---------------------------------------------------------------------------
# Backend health
# ---------------------------------------------------------------------------

class TestBackendHealth:
    async def test_up(self, client, upstreams):
        upstreams.handlers["anime"] = lambda r: httpx.Response(200, json={"ok": True})
        resp = await client.get("/api/v1/anime/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "up", "api_url": "http://anime:3000", "code": 200}
        assert str(upstreams.calls["anime"][0].url) == "http://anime:3000/health"

    async def test_down(self, client):
        resp = await client.get("/api/v1/manga/health")
        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "down"
        assert body["api_url"] == "http://manga:3000"
        assert "Connection refused" in body["message"]
        assert body["error"] == "Manga API is not reachable"

    async def test_aggregate(self, client, upstreams):
        upstreams.handlers["anime"] = lambda r: httpx.Response(200)
        upstreams.handlers["manga"] = lambda r: httpx.Response(200)
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 503  # chapter is unreachable
        body = resp.json()
        assert body["status"] == "down"
        assert body["backends"]["anime"]["status"] == "up"
        assert body["backends"]["chapter"]["status"] == "down"

    async def test_unknown_backend(self, client):
        resp = await client.get("/api/v1/music/health")
        assert resp.status_code == 404
        assert "error" in resp.json()


# ---------------------------------------------------------------------------
# Image proxy
# ---------------------------------------------------------------------------

class TestImage:
    async def test_non_network_scheme_rejected(self, client, upstreams):
        resp = await client.get("/api/v1/anime/image", params={"url": "javascript:alert(1)"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid URL"}
        assert upstreams.calls == {}

    async def test_missing_url(self, client, upstreams):
        resp = await client.get("/api/v1/anime/image")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing url parameter"}
        assert upstreams.calls == {}

    async def test_success(self, client, upstreams):
        upstreams.handlers["image"] = lambda r: httpx.Response(
            200, headers={"Content-Type": "image/png"}, content=b"\x89PNG"
        )
        resp = await client.get("/api/v1/anime/image", params={"url": "https://example.com/a.png"})
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.headers["cache-control"] == "public, max-age=86400"
        assert resp.content == b"\x89PNG"
        assert upstreams.calls["image"][0].headers["referer"] == "https://example.com/"

    async def test_upstream_404_becomes_502(self, client, upstreams):
        upstreams.handlers["image"] = lambda r: httpx.Response(404)
        resp = await client.get(
            "/api/v1/anime/image", params={"url": "https://example.com/missing.png"}
        )
        assert resp.status_code == 502
        assert resp.json()["code"] == 404

    async def test_image_route_on_backend_without_assets_is_proxied(self, client, upstreams):
        upstreams.handlers["chapter"] = lambda r: httpx.Response(200, json={"image": "x"})
        resp = await client.get("/api/v1/chapter/image", params={"url": "https://example.com/a.png"})
        assert resp.status_code == 200
        assert resp.json() == {"image": "x"}
        assert "image" not in upstreams.calls
        assert str(upstreams.calls["chapter"][0].url).startswith("http://chapter:3000/api/chapter/image?")


# ---------------------------------------------------------------------------
# Catch-all dispatch
# ---------------------------------------------------------------------------

class _Body(httpx.AsyncByteStream):
    """Upstream body delivered as an async stream, like a live connection."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


def _streamed(status: int, headers=None, body: bytes = b"") -> httpx.Response:
    return httpx.Response(status, headers=headers, stream=_Body(body))


class TestDispatch:
    async def test_stream_backend_headers_exactly_upstream(self, client, upstreams):
        upstream_headers = [
            ("content-type", "text/html"),
            ("access-control-allow-origin", "https://anime.example"),
            ("x-upstream", "otakudesu"),
            ("set-cookie", "a=1"),
            ("set-cookie", "b=2"),
        ]
        upstreams.handlers["anime"] = lambda r: _streamed(200, upstream_headers, b"<p>home</p>")
        resp = await client.get("/api/v1/anime/home")

        assert resp.status_code == 200
        assert resp.content == b"<p>home</p>"
        assert sorted(resp.headers.multi_items()) == sorted(upstream_headers)

    async def test_stream_backend_root(self, client, upstreams):
        upstreams.handlers["anime"] = lambda r: _streamed(200, body=b"root")
        await client.get("/api/v1/anime")
        await client.get("/api/v1/anime/")
        urls = [str(c.url) for c in upstreams.calls["anime"]]
        assert urls == ["http://anime:3000/otakudesu", "http://anime:3000/otakudesu"]

    async def test_decode_backend_only_content_type(self, client, upstreams):
        upstreams.handlers["manga"] = lambda r: httpx.Response(
            201,
            headers={"Content-Type": "application/json", "Access-Control-Allow-Origin": "*", "X-Up": "1"},
            content=b'{"saved": true}',
        )
        resp = await client.post("/api/v1/manga/bookmarks", json={"id": 7})

        assert resp.status_code == 201
        assert resp.json() == {"saved": True}
        assert resp.headers["content-type"] == "application/json"
        assert "access-control-allow-origin" not in resp.headers
        assert "x-up" not in resp.headers

    async def test_decode_backend_invalid_json(self, client, upstreams):
        upstreams.handlers["manga"] = lambda r: httpx.Response(
            200, headers={"Content-Type": "application/json"}, content=b"<html>oops"
        )
        resp = await client.get("/api/v1/manga/list")
        assert resp.status_code == 502
        assert resp.json() == {"error": "Invalid JSON from upstream"}

    async def test_decode_backend_non_finite_number(self, client, upstreams):
        upstreams.handlers["manga"] = lambda r: httpx.Response(
            200, headers={"Content-Type": "application/json"}, content=b'{"score": NaN}'
        )
        resp = await client.get("/api/v1/manga/list")
        assert resp.status_code == 502
        assert resp.json() == {"error": "Invalid JSON from upstream"}

    async def test_decode_backend_non_json_without_content_type(self, client, upstreams):
        upstreams.handlers["manga"] = lambda r: _streamed(200, [("x-up", "1")], b"plain")
        resp = await client.get("/api/v1/manga/raw")
        assert resp.status_code == 200
        assert resp.content == b"plain"
        assert "content-type" not in resp.headers
        assert "x-up" not in resp.headers

    async def test_unreachable_upstream(self, client):
        resp = await client.get("/api/v1/anime/home")
        assert resp.status_code == 502
        assert resp.json() == {
            "error": "Failed to reach anime API",
            "message": "[Errno 111] Connection refused",
        }

    async def test_query_passed_through(self, client, upstreams):
        upstreams.handlers["anime"] = lambda r: _streamed(200)
        await client.get("/api/v1/anime/search?q=naruto&page=2")
        assert str(upstreams.calls["anime"][0].url) == "http://anime:3000/otakudesu/search?q=naruto&page=2"

    @pytest.mark.parametrize("path, expected", [
        ("/api/v1/anime/anime/a%3Fb?page=2", "http://anime:3000/otakudesu/anime/a%3Fb?page=2"),
        ("/api/v1/anime/anime/a%23b?page=2", "http://anime:3000/otakudesu/anime/a%23b?page=2"),
        ("/api/v1/anime/search/one%2Fpiece", "http://anime:3000/otakudesu/search/one%2Fpiece"),
    ])
    async def test_encoded_path_kept_encoded(self, client, upstreams, path, expected):
        upstreams.handlers["anime"] = lambda r: _streamed(200)
        await client.get(path)
        assert str(upstreams.calls["anime"][0].url) == expected

    async def test_backends_do_not_block_each_other(self, client, upstreams):
        manga_done = asyncio.Event()

        async def slow_anime(request):
            # Completes only once manga has been served in parallel.
            await manga_done.wait()
            return _streamed(200, [("content-type", "text/plain")], b"anime")

        def manga(request):
            manga_done.set()
            return httpx.Response(200, headers={"Content-Type": "application/json"}, content=b"[]")

        upstreams.handlers["anime"] = slow_anime
        upstreams.handlers["manga"] = manga

        anime_resp, manga_resp = await asyncio.wait_for(
            asyncio.gather(client.get("/api/v1/anime/home"), client.get("/api/v1/manga/list")),
            timeout=5,
        )
        assert anime_resp.content == b"anime"
        assert manga_resp.json() == []

    async def test_unknown_backend(self, client):
        resp = await client.get("/api/v1/music/top")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Unknown backend 'music'"}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

class TestLifespan:
    async def test_missing_base_url_fails_fast(self):
        cfg = _fake_settings(manga_api_base_url="")
        with patch("main.settings", cfg):
            with pytest.raises(ConfigurationError):
                async with lifespan(app):
                    pass

    async def test_clients_created_and_closed(self):
        with patch("main.settings", _fake_settings()):
            async with lifespan(app):
                clients = dict(app.state.backend_clients)
                image_client = app.state.image_client
                assert set(clients) == {"anime", "manga"}
                assert all(c.follow_redirects is False for c in clients.values())
                assert image_client.follow_redirects is True
                assert image_client is not clients["anime"]
                assert clients["anime"] is not clients["manga"]
                assert clients["anime"]._transport is not clients["manga"]._transport
        assert all(c.is_closed for c in clients.values())
        assert image_client.is_closed
