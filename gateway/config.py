# gateway/config.py
from pydantic import PrivateAttr
from pydantic_settings import BaseSettings


def _csv_set(value: str) -> set[str]:
    return {x.strip() for x in value.split(",") if x.strip()}


def _csv_list(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


class Settings(BaseSettings):
    # Public route layout: <api_prefix>/<backend>/...
    api_prefix: str = "/api/v1"  # API_PREFIX

    # Backends mounted at startup (CSV). Each enabled backend needs a base URL.
    # ENABLED_BACKENDS=anime,manga,chapter
    enabled_backends: str = "anime,manga"  # ENABLED_BACKENDS

    # Upstream catalog APIs
    anime_api_base_url: str = "http://localhost:3001"    # ANIME_API_BASE_URL
    manga_api_base_url: str = "http://localhost:3002"    # MANGA_API_BASE_URL
    chapter_api_base_url: str = "http://localhost:3003"  # CHAPTER_API_BASE_URL

    # Per-backend timeouts (seconds, whole round trip)
    anime_api_timeout: float = 30.0    # ANIME_API_TIMEOUT
    manga_api_timeout: float = 30.0    # MANGA_API_TIMEOUT
    chapter_api_timeout: float = 30.0  # CHAPTER_API_TIMEOUT

    # Image fetches hit arbitrary third-party hosts; keep this below the
    # backend timeouts.
    image_fetch_timeout: float = 10.0  # IMAGE_FETCH_TIMEOUT

    max_body_bytes: int = 10 * 1024 * 1024  # MAX_BODY_BYTES (10 MB)

    # Single retry of idempotent requests whose connection attempt failed.
    # Off by default: every inbound request makes exactly one upstream attempt.
    upstream_retry_enabled: bool = False  # UPSTREAM_RETRY_ENABLED
    upstream_retry_backoff: float = 0.2   # UPSTREAM_RETRY_BACKOFF (seconds)

    # CORS_ALLOW_ORIGINS=https://app.example.com,https://admin.example.com
    cors_allow_origins: str = "*"  # CORS_ALLOW_ORIGINS

    log_level: str = "INFO"  # LOG_LEVEL

    # Pre-computed: parsed once at startup, not on every request.
    _enabled_backends_set: set[str] = PrivateAttr(default_factory=set)
    _cors_origins: list[str] = PrivateAttr(default_factory=list)

    def model_post_init(self, __context) -> None:
        self._enabled_backends_set = _csv_set(self.enabled_backends)
        self._cors_origins = _csv_list(self.cors_allow_origins)

    @property
    def enabled_backends_set(self) -> set[str]:
        return self._enabled_backends_set

    @property
    def cors_origins(self) -> list[str]:
        return self._cors_origins

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
