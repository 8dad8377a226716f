"""Sources of Nitter instances.

Two registries are provided:

* :class:`StaticInstanceRegistry` serves a fixed list taken from configuration.
* :class:`WikiInstanceRegistry` scrapes the public instance list from the
  Nitter wiki, probes every instance, and keeps that view current with two
  background loops.

Both expose the same small API: ``all_instances()``, ``active_instances()``,
``start()`` and ``close()``.  Readers always see a complete snapshot: the
wiki registry builds a new tuple and swaps it in under a lock.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import posixpath
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx

from nitter_rss_proxy.config import ConfigError, ProviderKind, Settings, StaticProviderConfig, WikiProviderConfig
from nitter_rss_proxy.tools.instance_finder import InstanceCandidate, find_instances
from nitter_rss_proxy.tools.prober import HealthProber

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Instance:
    """Base URL of a Nitter instance, e.g. ``https://nitter.net``."""

    url: str

    @classmethod
    def parse(cls, raw: str) -> "Instance":
        raw = raw.strip()
        try:
            parts = urlsplit(raw)
        except ValueError as exc:
            raise ValueError(f"failed parsing {raw!r}: {exc}") from exc
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"{raw!r} is not an http(s) URL")
        return cls(raw)

    def feed_url(self, account: str) -> str:
        """URL of ``account``'s RSS feed on this instance."""
        parts = urlsplit(self.url)
        path = posixpath.join(parts.path or "/", account, "rss")
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class InstanceHealth:
    alive: bool
    latency_ms: int = 0


# Ordered (instance, health) pairs; replaced wholesale, never mutated.
InstanceSet = Tuple[Tuple[Instance, InstanceHealth], ...]


class InstanceRegistry(abc.ABC):
    @abc.abstractmethod
    def all_instances(self) -> List[Instance]:
        """Every known instance, in registry order."""

    @abc.abstractmethod
    def active_instances(self) -> List[Instance]:
        """Instances currently believed to be healthy, in registry order."""

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


class StaticInstanceRegistry(InstanceRegistry):
    def __init__(self, instances: List[Instance]):
        if not instances:
            raise ConfigError("no instances supplied")
        self._instances = tuple(instances)

    @classmethod
    def from_config(cls, config: StaticProviderConfig) -> "StaticInstanceRegistry":
        return cls.from_csv(config.instances)

    @classmethod
    def from_csv(cls, value: str) -> "StaticInstanceRegistry":
        instances = []
        for raw in value.split(","):
            # Empty entries are allowed so instances can be commented out with trailing commas.
            if not raw.strip():
                continue
            try:
                instances.append(Instance.parse(raw))
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
        return cls(instances)

    def all_instances(self) -> List[Instance]:
        return list(self._instances)

    def active_instances(self) -> List[Instance]:
        return list(self._instances)


class WikiInstanceRegistry(InstanceRegistry):
    """Instances scraped from ``<repo>/wiki/instances`` and kept probed.

    ``stop_event`` is checked at the top of every background loop iteration;
    setting it (or calling :meth:`close`) ends both loops.
    """

    def __init__(
        self,
        config: WikiProviderConfig,
        client: httpx.AsyncClient,
        *,
        prober: Optional[HealthProber] = None,
        repo_client: Optional[httpx.AsyncClient] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self._client = client
        self._prober = prober or HealthProber(client, timeout=config.probe_timeout)
        self._owns_repo_client = repo_client is None and config.repo_proxy is not None
        if repo_client is not None:
            self._repo_client = repo_client
        elif config.repo_proxy:
            self._repo_client = httpx.AsyncClient(proxy=config.repo_proxy, timeout=30.0)
        else:
            self._repo_client = client
        self._stop = stop_event or asyncio.Event()
        self._lock = threading.Lock()
        self._snapshot: InstanceSet = ()
        self._tasks: List[asyncio.Task] = []

    def snapshot(self) -> InstanceSet:
        with self._lock:
            return self._snapshot

    def all_instances(self) -> List[Instance]:
        return [instance for instance, _ in self.snapshot()]

    def active_instances(self) -> List[Instance]:
        return [instance for instance, health in self.snapshot() if health.alive]

    async def _check_candidate(self, candidate: InstanceCandidate, semaphore: asyncio.Semaphore):
        try:
            instance = Instance.parse(candidate.url)
        except ValueError as exc:
            logger.warning("Skipping instance row: %s", exc)
            return None
        async with semaphore:
            result = await self._prober.probe(instance)
        health = InstanceHealth(alive=candidate.reported_healthy and result.ok, latency_ms=result.latency_ms)
        return instance, health

    async def refresh(self) -> int:
        """Rebuild the snapshot from the wiki page.

        Returns the number of instances in the new snapshot.  If the page
        yields no rows the previous snapshot is kept.
        """
        candidates = await find_instances(self._repo_client, self.config.instances_page, self.config.selector)
        if not candidates:
            logger.warning("Instance list at %s is empty; keeping %d known instance(s)",
                           self.config.instances_page, len(self.snapshot()))
            return len(self.snapshot())

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        results = await asyncio.gather(
            *(self._check_candidate(c, semaphore) for c in candidates), return_exceptions=True
        )
        entries = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, Exception):
                logger.error("Failed checking %s: %s", candidate.url, result)
                continue
            if result is not None:
                entries.append(result)

        new_snapshot: InstanceSet = tuple(entries)
        with self._lock:
            self._snapshot = new_snapshot
        alive = sum(1 for _, health in new_snapshot if health.alive)
        logger.info("Reset instance list: %d instance(s), %d alive", len(new_snapshot), alive)
        return len(new_snapshot)

    async def reprobe(self) -> None:
        """Probe every known instance again and merge the results."""
        current = self.snapshot()
        if not current:
            return
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def probe(instance: Instance):
            async with semaphore:
                return await self._prober.probe(instance)

        results = await asyncio.gather(*(probe(instance) for instance, _ in current), return_exceptions=True)
        updates: Dict[Instance, InstanceHealth] = {}
        for (instance, health), result in zip(current, results):
            if isinstance(result, Exception):
                logger.error("Failed probing %s: %s", instance, result)
                updates[instance] = InstanceHealth(alive=False, latency_ms=health.latency_ms)
            elif result.ok:
                updates[instance] = InstanceHealth(alive=True, latency_ms=result.latency_ms)
            else:
                updates[instance] = InstanceHealth(alive=False, latency_ms=health.latency_ms)

        # Merge against the latest snapshot in case a refresh replaced it meanwhile.
        with self._lock:
            self._snapshot = tuple(
                (instance, updates.get(instance, health)) for instance, health in self._snapshot
            )

    async def _run_periodically(self, name: str, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await job()
            except Exception as exc:
                logger.exception("Instance %s failed: %s", name, exc)
        logger.debug("Instance %s loop stopped", name)

    async def start(self) -> None:
        """Load the instance list once and start the background loops."""
        try:
            await self.refresh()
        except httpx.HTTPError as exc:
            logger.error("Failed loading instance list from %s: %s", self.config.instances_page, exc)
        self._tasks = [
            asyncio.create_task(self._run_periodically("refresh", self.config.refresh_interval, self.refresh)),
            asyncio.create_task(self._run_periodically("probe", self.config.probe_interval, self.reprobe)),
        ]

    async def close(self) -> None:
        self._stop.set()
        if self._tasks:
            # Don't wait out an in-progress refresh.
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        if self._owns_repo_client:
            await self._repo_client.aclose()


def registry_from_settings(settings: Settings, client: httpx.AsyncClient) -> InstanceRegistry:
    if settings.provider is ProviderKind.WIKI:
        return WikiInstanceRegistry(settings.wiki, client)
    return StaticInstanceRegistry.from_config(settings.static)
