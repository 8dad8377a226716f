"""Runtime configuration for the proxy.

Settings are read from the process environment (optionally seeded from a
``.env`` file via ``python-dotenv``) into frozen dataclasses.  Each instance
provider gets its own typed section so that provider construction never has
to dig through loosely-typed maps.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

ENV_PREFIX = "NITTER_RSS_"

DEFAULT_INSTANCES = "https://twiiit.com"
DEFAULT_WIKI_REPO = "https://github.com/zedeus/nitter"
# Second table on the instances wiki page lists the public instances.
DEFAULT_WIKI_SELECTOR = "#wiki-body > div:nth-of-type(1) > table:nth-of-type(2) tr"


class ConfigError(Exception):
    """Raised when the startup configuration cannot be used."""
    pass


class FeedFormat(str, Enum):
    ATOM = "atom"
    JSON = "json"
    RSS = "rss"


class ProviderKind(str, Enum):
    STATIC = "static"
    WIKI = "wiki"


@dataclass(frozen=True)
class StaticProviderConfig:
    instances: str = DEFAULT_INSTANCES


@dataclass(frozen=True)
class WikiProviderConfig:
    repo: str = DEFAULT_WIKI_REPO
    selector: str = DEFAULT_WIKI_SELECTOR
    repo_proxy: Optional[str] = None
    refresh_interval: float = 30 * 60.0
    probe_interval: float = 10.0
    probe_timeout: float = 5.0
    max_concurrency: int = 30

    def __post_init__(self) -> None:
        _require_url("wiki repo", self.repo)
        if self.repo_proxy:
            _require_url("wiki proxy", self.repo_proxy)
        if not self.selector.strip():
            raise ConfigError("wiki selector must not be empty")
        for name in ("refresh_interval", "probe_interval", "probe_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be at least 1")

    @property
    def instances_page(self) -> str:
        return self.repo.rstrip("/") + "/wiki/instances"


@dataclass(frozen=True)
class Settings:
    host: str = "localhost"
    port: int = 8080
    base_url: Optional[str] = None
    cycle: bool = True
    debug_authors: bool = True
    format: FeedFormat = FeedFormat.ATOM
    rewrite: bool = True
    timeout: float = 10.0
    request_timeout: float = 30.0
    provider: ProviderKind = ProviderKind.STATIC
    static: StaticProviderConfig = field(default_factory=StaticProviderConfig)
    wiki: WikiProviderConfig = field(default_factory=WikiProviderConfig)

    def __post_init__(self) -> None:
        if self.base_url:
            _require_url("base URL", self.base_url)
        if self.timeout <= 0 or self.request_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if not 0 < self.port < 65536:
            raise ConfigError(f"invalid port {self.port}")


def _require_url(name: str, value: str) -> None:
    try:
        parts = urlsplit(value)
    except ValueError as exc:
        raise ConfigError(f"failed parsing {name} {value!r}: {exc}") from exc
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{name} {value!r} is not an absolute URL")


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, kind=float):
    try:
        return kind(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _parse_addr(raw: str) -> Tuple[str, int]:
    host, sep, port = raw.strip().rpartition(":")
    if not sep or not host:
        raise ConfigError(f"listen address must be host:port, got {raw!r}")
    return host, _parse_number("port", port, int)


def _parse_enum(name: str, raw: str, enum_cls):
    try:
        return enum_cls(raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{name} must be one of {allowed}, got {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None, *, dotenv_path: Optional[str] = None) -> Settings:
    """Build :class:`Settings` from ``NITTER_RSS_*`` variables.

    When ``env`` is omitted the process environment is used after loading
    ``dotenv_path`` (or a ``.env`` in the working directory) without
    overriding variables that are already set.
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    def get(key: str) -> Optional[str]:
        value = env.get(ENV_PREFIX + key)
        return value if value not in (None, "") else None

    kwargs = {}
    if get("ADDR"):
        kwargs["host"], kwargs["port"] = _parse_addr(get("ADDR"))
    if get("BASE"):
        kwargs["base_url"] = get("BASE")
    for key, attr in (("CYCLE", "cycle"), ("DEBUG_AUTHORS", "debug_authors"), ("REWRITE", "rewrite")):
        if get(key):
            kwargs[attr] = _parse_bool(ENV_PREFIX + key, get(key))
    if get("FORMAT"):
        kwargs["format"] = _parse_enum("format", get("FORMAT"), FeedFormat)
    if get("PROVIDER"):
        kwargs["provider"] = _parse_enum("provider", get("PROVIDER"), ProviderKind)
    if get("TIMEOUT"):
        kwargs["timeout"] = _parse_number(ENV_PREFIX + "TIMEOUT", get("TIMEOUT"))
    if get("REQUEST_TIMEOUT"):
        kwargs["request_timeout"] = _parse_number(ENV_PREFIX + "REQUEST_TIMEOUT", get("REQUEST_TIMEOUT"))

    if get("INSTANCES"):
        kwargs["static"] = StaticProviderConfig(instances=get("INSTANCES"))

    wiki = {}
    if get("WIKI_REPO"):
        wiki["repo"] = get("WIKI_REPO")
    if get("WIKI_SELECTOR"):
        wiki["selector"] = get("WIKI_SELECTOR")
    if get("WIKI_PROXY"):
        wiki["repo_proxy"] = get("WIKI_PROXY")
    for key, attr in (
        ("WIKI_REFRESH_INTERVAL", "refresh_interval"),
        ("WIKI_PROBE_INTERVAL", "probe_interval"),
        ("PROBE_TIMEOUT", "probe_timeout"),
    ):
        if get(key):
            wiki[attr] = _parse_number(ENV_PREFIX + key, get(key))
    if get("WIKI_CONCURRENCY"):
        wiki["max_concurrency"] = _parse_number(ENV_PREFIX + "WIKI_CONCURRENCY", get("WIKI_CONCURRENCY"), int)
    if wiki:
        kwargs["wiki"] = WikiProviderConfig(**wiki)

    return Settings(**kwargs)
