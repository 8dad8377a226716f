"""Turn a Nitter RSS document into the feed we serve.

The raw bytes are parsed with ``feedparser``; links, GUIDs, the profile image
and (optionally) item content are rewritten to point at Twitter; the result is
written as Atom or RSS with ``feedgen`` or as a JSON Feed document.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
from feedgen.feed import FeedGenerator
from feedparser import FeedParserDict

from nitter_rss_proxy.config import FeedFormat
from nitter_rss_proxy.tools.canonical import canonicalize_icon, canonicalize_link
from nitter_rss_proxy.tools.rewriter import ContentRewriter

logger = logging.getLogger(__name__)

TITLE_LEN = 80  # max length of item titles, in characters

CONTENT_TYPES = {
    FeedFormat.ATOM: "application/atom+xml; charset=UTF-8",
    FeedFormat.JSON: "application/json; charset=UTF-8",
    FeedFormat.RSS: "application/rss+xml; charset=UTF-8",
}

JSON_FEED_VERSION = "https://jsonfeed.org/version/1"


class FeedRewriteError(Exception):
    """Raised when an instance's response can't be turned into a feed."""
    pass


@dataclass(frozen=True)
class FeedItem:
    title: str
    link: str
    id: str
    author: str
    content: str
    description: str
    published: Optional[datetime]
    updated: Optional[datetime]


@dataclass(frozen=True)
class Feed:
    title: str
    link: str
    description: str
    author: str
    image: str
    updated: Optional[datetime]
    items: List[FeedItem]


@dataclass(frozen=True)
class RenderedFeed:
    body: bytes
    content_type: str


def _to_datetime(parsed) -> Optional[datetime]:
    """Convert a feedparser ``*_parsed`` struct (always UTC) to an aware datetime."""
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc)


def _truncate_title(title: str) -> str:
    # Nitter dumps the entire tweet into the title, which looks bad in readers.
    if len(title) > TITLE_LEN:
        return title[: TITLE_LEN - 1] + "…"
    return title


def _item_id(entry: FeedParserDict) -> str:
    guid = entry.get("id") or entry.get("link")
    if guid:
        return canonicalize_link(guid)
    # No <guid> or <link>: derive a stable id from the item so entries stay distinct.
    digest = hashlib.sha1(
        (entry.get("title", "") + "\n" + entry.get("description", "")).encode("utf-8")
    ).hexdigest()
    return canonicalize_link("/i/items/" + digest)


def _rfc3339(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


def parse_feed(raw: bytes) -> FeedParserDict:
    """Parse ``raw`` with feedparser, rejecting anything that isn't a feed."""
    parsed = feedparser.parse(raw)
    if not parsed.get("version"):
        reason = parsed.get("bozo_exception") or "unrecognized document"
        raise FeedRewriteError(f"failed parsing feed: {reason}")
    return parsed


class FeedBuilder:
    """Converts Nitter RSS into the configured output format."""

    def __init__(
        self,
        format: FeedFormat = FeedFormat.ATOM,
        *,
        rewrite: bool = True,
        base_url: Optional[str] = None,
        debug_authors: bool = True,
        rewriter: Optional[ContentRewriter] = None,
    ):
        self.format = format
        self.rewrite = rewrite
        self.base_url = base_url
        self.debug_authors = debug_authors
        self._rewriter = rewriter or ContentRewriter()

    def build(self, parsed: FeedParserDict, account: str) -> Feed:
        meta = parsed.feed
        items = []
        authors: Counter = Counter()
        for entry in parsed.entries:
            # Nitter puts the tweet's HTML in <description>.
            content = entry.get("description", "")
            if self.rewrite:
                content = self._rewriter.rewrite(content, location=entry.get("link"))
            title = entry.get("title", "")
            author = entry.get("author", "")
            authors[author] += 1
            items.append(
                FeedItem(
                    title=_truncate_title(title),
                    link=canonicalize_link(entry.get("link", "")),
                    id=_item_id(entry),
                    author=author,
                    content=content,
                    # JSON Feed readers expect plain text in the summary.
                    description=title if self.format is FeedFormat.JSON else content,
                    published=_to_datetime(entry.get("published_parsed")),
                    # feedparser falls back to published_parsed when there is no <updated>.
                    updated=_to_datetime(entry.get("updated_parsed")) if "updated" in entry else None,
                )
            )

        # Buggy instances have been seen mixing other accounts' tweets into a feed.
        if self.debug_authors:
            logger.info("Authors for %s: %s", account, dict(authors))

        image = meta.get("image", {}).get("href") or meta.get("image", {}).get("url", "")
        return Feed(
            title=meta.get("title") or account,
            link=canonicalize_link(meta.get("link", "")),
            description="Twitter feed for " + account,
            author=meta.get("author", ""),
            image=canonicalize_icon(image) if image else "",
            updated=_to_datetime(meta.get("updated_parsed")) if "updated" in meta else None,
            items=items,
        )

    def render(self, raw: bytes, account: str) -> RenderedFeed:
        parsed = parse_feed(raw)
        logger.info("Rewriting %d item(s) for %s", len(parsed.entries), account)
        feed = self.build(parsed, account)
        if self.format is FeedFormat.JSON:
            body = self._write_json(feed, account)
        else:
            try:
                body = self._write_xml(feed)
            except ValueError as exc:
                # feedgen raises ValueError for missing required fields.
                raise FeedRewriteError(f"failed writing {self.format.value} feed: {exc}") from exc
        return RenderedFeed(body=body, content_type=CONTENT_TYPES[self.format])

    def _write_xml(self, feed: Feed) -> bytes:
        fg = FeedGenerator()
        if self.format is FeedFormat.RSS:
            fg.load_extension("dc", atom=False, rss=True)
        link = feed.link or "https://twitter.com/"
        fg.id(link)
        fg.title(feed.title)
        fg.link(href=link, rel="alternate")
        fg.description(feed.description)
        if feed.updated:
            fg.updated(feed.updated)
        if feed.author:
            fg.author({"name": feed.author})
        if feed.image:
            fg.icon(feed.image)
            fg.logo(feed.image)
            fg.image(url=feed.image, title=feed.title, link=link)

        for item in feed.items:
            fe = fg.add_entry(order="append")
            fe.id(item.id)
            fe.guid(item.id, permalink=True)
            fe.title(item.title or "(untitled)")
            if item.link:
                fe.link(href=item.link, rel="alternate")
            # description() also sets the Atom content, so content() must come second.
            if item.description:
                fe.description(item.description)
            if item.content:
                fe.content(item.content, type="html")
            if item.published:
                fe.published(item.published)
            if item.updated:
                fe.updated(item.updated)
            elif item.published:
                fe.updated(item.published)
            if item.author:
                fe.author({"name": item.author})
                if self.format is FeedFormat.RSS:
                    fe.dc.dc_creator(item.author)

        if self.format is FeedFormat.RSS:
            return fg.rss_str(pretty=True)
        return fg.atom_str(pretty=True)

    def _write_json(self, feed: Feed, account: str) -> bytes:
        doc: Dict[str, Any] = {
            "version": JSON_FEED_VERSION,
            "title": feed.title,
            "home_page_url": feed.link,
            "description": feed.description,
        }
        if self.base_url:
            doc["feed_url"] = self.base_url.rstrip("/") + "/" + account
        if feed.author:
            doc["author"] = {"name": feed.author}
        if feed.image:
            doc["icon"] = feed.image
            doc["favicon"] = feed.image

        items = []
        for item in feed.items:
            out: Dict[str, Any] = {"id": item.id, "url": item.link, "title": item.title}
            if item.description:
                out["summary"] = item.description
            if item.content:
                out["content_html"] = item.content
            if item.published:
                out["date_published"] = _rfc3339(item.published)
            if item.updated:
                out["date_modified"] = _rfc3339(item.updated)
            if item.author:
                out["author"] = {"name": item.author}
            items.append(out)
        doc["items"] = items
        return (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
