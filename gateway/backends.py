# gateway/backends.py
import enum
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Iterator, Mapping

from errors import ConfigurationError

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)


class RelayMode(enum.Enum):
    STREAM = "stream"
    DECODE_JSON = "decode_json"


class ForwardPolicy(enum.Enum):
    ALL = "all"
    ALLOW_LIST = "allow_list"


class ReturnPolicy(enum.Enum):
    ALL = "all"
    CONTENT_TYPE_ONLY = "content_type_only"


DEFAULT_ALLOW_LIST: frozenset[str] = frozenset({"authorization", "content-type"})


@dataclass(frozen=True)
class BackendConfig:
    name: str
    base_url: str
    strip_prefix: str
    add_prefix: str
    timeout: float
    relay_mode: RelayMode
    forward_policy: ForwardPolicy
    return_policy: ReturnPolicy
    follow_redirects: bool = False
    allow_list: frozenset[str] = DEFAULT_ALLOW_LIST
    serves_images: bool = False

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True)
class _BackendRule:
    """Static routing and policy data for one backend; URLs come from Settings."""

    add_prefix: str
    relay_mode: RelayMode
    forward_policy: ForwardPolicy
    return_policy: ReturnPolicy
    serves_images: bool = False
    allow_list: frozenset[str] = DEFAULT_ALLOW_LIST


# The anime upstream mirrors its own headers to the client; manga and chapter
# upstreams send conflicting CORS headers, so their bodies are re-encoded and
# the gateway owns the response headers.
BACKEND_RULES: Mapping[str, _BackendRule] = MappingProxyType({
    "anime": _BackendRule(
        add_prefix="/otakudesu",
        relay_mode=RelayMode.STREAM,
        forward_policy=ForwardPolicy.ALL,
        return_policy=ReturnPolicy.ALL,
        serves_images=True,
    ),
    "manga": _BackendRule(
        add_prefix="/api/manga",
        relay_mode=RelayMode.DECODE_JSON,
        forward_policy=ForwardPolicy.ALLOW_LIST,
        return_policy=ReturnPolicy.CONTENT_TYPE_ONLY,
        serves_images=True,
    ),
    "chapter": _BackendRule(
        add_prefix="/api/chapter",
        relay_mode=RelayMode.DECODE_JSON,
        forward_policy=ForwardPolicy.ALLOW_LIST,
        return_policy=ReturnPolicy.CONTENT_TYPE_ONLY,
    ),
})


class BackendRegistry:
    """Read-only table of backend configs, keyed by backend name.

    Built once at startup and never mutated, so request handlers read it
    concurrently without locking.
    """

    def __init__(self, backends: Iterable[BackendConfig]) -> None:
        table: dict[str, BackendConfig] = {}
        for backend in backends:
            if not backend.base_url:
                raise ConfigurationError(f"{backend.name} base url not found")
            if backend.name in table:
                raise ConfigurationError(f"duplicate backend '{backend.name}'")
            table[backend.name] = backend
        self._backends: Mapping[str, BackendConfig] = MappingProxyType(table)

    def get(self, name: str) -> BackendConfig | None:
        return self._backends.get(name)

    def __iter__(self) -> Iterator[BackendConfig]:
        return iter(self._backends.values())

    def names(self) -> list[str]:
        return list(self._backends)


def build_registry(cfg: "Settings") -> BackendRegistry:
    """Build the registry for every enabled backend; fail fast on bad config."""
    api_prefix = "/" + cfg.api_prefix.strip("/")
    unknown = cfg.enabled_backends_set - set(BACKEND_RULES)
    if unknown:
        raise ConfigurationError(f"unknown backend(s): {', '.join(sorted(unknown))}")

    backends = []
    for name, rule in BACKEND_RULES.items():
        if name not in cfg.enabled_backends_set:
            continue
        base_url = (getattr(cfg, f"{name}_api_base_url", "") or "").strip()
        timeout = getattr(cfg, f"{name}_api_timeout", 0) or 30.0
        backends.append(
            BackendConfig(
                name=name,
                base_url=base_url.rstrip("/"),
                strip_prefix=f"{api_prefix}/{name}",
                add_prefix=rule.add_prefix,
                timeout=float(timeout),
                relay_mode=rule.relay_mode,
                forward_policy=rule.forward_policy,
                return_policy=rule.return_policy,
                allow_list=rule.allow_list,
                serves_images=rule.serves_images,
            )
        )

    registry = BackendRegistry(backends)
    for backend in registry:
        logger.info(
            "Backend %s -> %s (relay=%s, forward=%s, timeout=%.1fs)",
            backend.name, backend.base_url, backend.relay_mode.value,
            backend.forward_policy.value, backend.timeout,
        )
    return registry
