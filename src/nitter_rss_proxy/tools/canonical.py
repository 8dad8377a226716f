"""Whole-URL rewrites for feed and item fields.

Unlike :mod:`nitter_rss_proxy.tools.rewriter`, these operate on a single URL
(a feed link, an item link or GUID, the profile image) rather than on URLs
embedded in HTML.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlsplit, urlunsplit

from nitter_rss_proxy.tools.rewriter import HOST, SCHEME, SLASH

logger = logging.getLogger(__name__)

CANONICAL_HOST = "twitter.com"

# Exactly matches a Nitter profile image URL, e.g.
# "https://example.org/pic/profile_images%2F1234567890%2F_AbQ3eRu_400x400.jpg" or
# "http://example.org/pic/pbs.twimg.com%2Fprofile_images%2F1234567890%2F_AbQ3eRu_400x400.jpg".
_ICON_RE = re.compile(
    SCHEME + HOST + "/pic" + SLASH + r"(?:pbs\.twimg\.com" + SLASH + ")?profile_images" + SLASH
    + r"(\d+)" + SLASH + r"([-_.a-zA-Z0-9]+)"
)


def canonicalize_link(url: str) -> str:
    """Return ``url`` with an ``https://twitter.com`` origin and no fragment.

    Nitter appends ``#m`` to item links; that is dropped along with any other
    fragment.  An empty link becomes the bare ``https://twitter.com`` origin;
    input that can't be parsed is returned as-is.
    """
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        logger.warning("Failed parsing %r: %s", url, exc)
        return url
    return urlunsplit(("https", CANONICAL_HOST, parts.path, parts.query, ""))


def canonicalize_icon(url: str) -> str:
    """Rewrite a Nitter profile image URL to the corresponding pbs.twimg.com URL."""
    match = _ICON_RE.fullmatch(url or "")
    if match is None:
        return url
    return "https://pbs.twimg.com/profile_images/%s/%s" % (match.group(1), match.group(2))
