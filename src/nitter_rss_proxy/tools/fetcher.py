"""Fetch an account's feed from whichever Nitter instance answers first.

``FeedFetcher.fetch`` walks the registry's instances starting at a rotating
offset and returns the first response that can be parsed and rewritten.
Every instance is tried at most once per request.  When all of them fail, a
single :class:`AllInstancesFailedError` is raised, and no partial output is
produced.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from nitter_rss_proxy.tools.registry import Instance, InstanceRegistry
from nitter_rss_proxy.tools.rss_feed_utils import FeedBuilder, FeedRewriteError, RenderedFeed

logger = logging.getLogger(__name__)

# Comma-separated usernames with an optional suffix supported by Nitter's RSS
# handler. Leading junk (e.g. a prefix proxied to us) is ignored.
_ACCOUNT_RE = re.compile(r"[_a-zA-Z0-9,]+(/(media|search|with_replies))?$")


class NotFoundError(Exception):
    """The request path names something other than an account."""
    pass


class InvalidAccountError(ValueError):
    pass


@dataclass(frozen=True)
class FailedAttempt:
    instance: Instance
    reason: str


class AllInstancesFailedError(Exception):
    def __init__(self, account: str, attempts: List[FailedAttempt], reason: str = ""):
        self.account = account
        self.attempts = attempts
        message = f"couldn't get feed for {account} from any of {len(attempts)} attempted instance(s)"
        super().__init__(message + (f": {reason}" if reason else ""))


@dataclass
class FetchResult:
    feed: RenderedFeed
    instance: Instance
    failed_attempts: List[FailedAttempt] = field(default_factory=list)


def extract_account(path: str) -> str:
    """Return the Nitter account path at the end of request ``path``.

    Raises :class:`NotFoundError` for favicon requests and
    :class:`InvalidAccountError` when no account can be found.
    """
    if path.endswith("favicon.ico"):
        raise NotFoundError(path)
    match = _ACCOUNT_RE.search(path)
    if match is None:
        raise InvalidAccountError(f"invalid user in {path!r}")
    return match.group(0)


class FeedFetcher:
    """Failover fetching across a registry's instances.

    ``timeout`` bounds each attempt and ``request_timeout`` bounds the whole
    request; when the latter expires the in-flight attempt is cancelled.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        client: httpx.AsyncClient,
        builder: FeedBuilder,
        *,
        cycle: bool = True,
        timeout: float = 10.0,
        request_timeout: float = 30.0,
    ):
        self.registry = registry
        self.builder = builder
        self.cycle = cycle
        self.timeout = timeout
        self.request_timeout = request_timeout
        self._client = client
        self._start = 0
        self._start_lock = threading.Lock()

    def _instances(self) -> List[Instance]:
        # A stale health signal shouldn't stop us from trying anything.
        return self.registry.active_instances() or self.registry.all_instances()

    def _next_start(self, count: int) -> int:
        """Read the starting offset and advance it for the next request."""
        with self._start_lock:
            start = self._start % count
            if self.cycle:
                self._start = (start + 1) % count
            return start

    async def _fetch_one(self, instance: Instance, account: str) -> bytes:
        url = instance.feed_url(account)
        logger.info("Fetching %s", url)
        response = await self._client.get(url, timeout=self.timeout)
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"server returned status {response.status_code} ({response.reason_phrase})",
                request=response.request,
                response=response,
            )
        return response.content

    async def _fetch_any(self, account: str, instances: List[Instance], attempts: List[FailedAttempt]) -> FetchResult:
        start = self._next_start(len(instances))
        for i in range(len(instances)):
            instance = instances[(start + i) % len(instances)]
            try:
                body = await self._fetch_one(instance, account)
            except httpx.HTTPError as exc:
                logger.warning("Failed fetching %s from %s: %s", account, instance, exc)
                attempts.append(FailedAttempt(instance, str(exc) or type(exc).__name__))
                continue
            try:
                feed = self.builder.render(body, account)
            except FeedRewriteError as exc:
                logger.warning("Failed rewriting %s from %s: %s", account, instance, exc)
                attempts.append(FailedAttempt(instance, str(exc)))
                continue
            return FetchResult(feed=feed, instance=instance, failed_attempts=list(attempts))
        raise AllInstancesFailedError(account, list(attempts))

    async def fetch(self, account: str) -> FetchResult:
        instances = self._instances()
        if not instances:
            raise AllInstancesFailedError(account, [], "no instances available")
        attempts: List[FailedAttempt] = []
        try:
            return await asyncio.wait_for(self._fetch_any(account, instances, attempts), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out after %.1fs fetching %s", self.request_timeout, account)
            raise AllInstancesFailedError(account, list(attempts), "request timed out") from None


async def fetch_feed(fetcher: FeedFetcher, account: str) -> Optional[RenderedFeed]:
    """Fetch ``account`` and return its feed, or ``None`` if every instance failed."""
    try:
        return (await fetcher.fetch(account)).feed
    except AllInstancesFailedError as exc:
        logger.error("%s", exc)
        return None
