"""Liveness/latency probing of Nitter instances."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from nitter_rss_proxy.tools.registry import Instance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    latency_ms: int
    ok: bool


class HealthProber:
    """Issue a single GET to an instance's base URL and time it.

    Any HTTP response counts as reachable; only transport errors and timeouts
    mark the instance as down.  The prober never retries; the registry's
    periodic loop decides when to probe again.
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float = 5.0):
        self._client = client
        self._timeout = timeout

    async def probe(self, instance: "Instance") -> ProbeResult:
        start = time.monotonic()
        try:
            # Headers are enough; the body is never read.
            async with self._client.stream("GET", instance.url, timeout=self._timeout):
                pass
        except httpx.HTTPError as exc:
            logger.debug("Probe of %s failed: %s", instance.url, exc)
            return ProbeResult(latency_ms=0, ok=False)
        return ProbeResult(latency_ms=int((time.monotonic() - start) * 1000), ok=True)
