"""Discover public Nitter instances from the project's wiki.

The instances page lists one instance per table row: the first cell links to
the instance and the second holds an emoji whose ``alias`` attribute reports
the community-observed health (``white_check_mark`` when it's working).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

HEALTHY_ALIAS = "white_check_mark"


@dataclass(frozen=True)
class InstanceCandidate:
    url: str
    reported_healthy: bool


def _row_to_candidate(row: Tag) -> Optional[InstanceCandidate]:
    """Return the candidate described by ``row`` or ``None`` if it's not an instance row."""
    cells = row.find_all("td", recursive=False)
    if len(cells) < 2:
        return None
    link = cells[0].find("a", href=True)
    if link is None or not link["href"].strip():
        return None
    glyph = cells[1].find(attrs={"alias": True})
    healthy = glyph is not None and glyph["alias"] == HEALTHY_ALIAS
    return InstanceCandidate(url=link["href"].strip(), reported_healthy=healthy)


def parse_instance_rows(html: str, selector: str) -> List[InstanceCandidate]:
    """Extract instance candidates from the wiki page ``html``.

    Rows matched by ``selector`` that don't look like instance rows (header
    rows, rows missing a link) are skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    candidates = []
    for row in soup.select(selector):
        candidate = _row_to_candidate(row)
        if candidate is None:
            logger.debug("Skipping row without instance link: %s", row.get_text(" ", strip=True)[:80])
            continue
        candidates.append(candidate)
    return candidates


async def find_instances(client: httpx.AsyncClient, page_url: str, selector: str) -> List[InstanceCandidate]:
    """Fetch the instances page and return its rows.

    Raises ``httpx.HTTPError`` if the page can't be fetched.
    """
    logger.info("Fetching instance list from %s", page_url)
    response = await client.get(page_url, follow_redirects=True)
    response.raise_for_status()
    candidates = parse_instance_rows(response.text, selector)
    logger.info("Found %d instance row(s) on %s", len(candidates), page_url)
    return candidates
