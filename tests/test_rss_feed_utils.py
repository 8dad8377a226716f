"""Tests for turning Nitter RSS into Atom, JSON Feed and RSS output.

The output is parsed back with ``feedparser`` (or ``json``) rather than
compared byte for byte, since ``feedgen`` controls the exact layout.
"""

import json
import re
import warnings
from unittest import TestCase, mock

import feedparser

from nitter_rss_proxy.config import FeedFormat
from nitter_rss_proxy.tools.rss_feed_utils import CONTENT_TYPES, FeedBuilder, FeedRewriteError, parse_feed
from samples import LONG_TITLE, NITTER_RSS, NOT_A_FEED

STATUS_LINK = "https://twitter.com/NASA/status/1610328347927552001"
ICON = "https://pbs.twimg.com/profile_images/1321163587679784960/0ZxKlEKB_400x400.jpg"

# The first item with its <guid> and <link> removed.
NO_LINK_RSS = re.sub(rb"\s*<(guid|link)>[^<]*1610328347927552001#m</\1>", b"", NITTER_RSS)


class TestParseFeed(TestCase):
    def test_rejects_non_feed(self) -> None:
        with self.assertRaises(FeedRewriteError):
            parse_feed(NOT_A_FEED)

    def test_accepts_nitter_rss(self) -> None:
        self.assertEqual(len(parse_feed(NITTER_RSS).entries), 2)


class TestFeedBuilder(TestCase):
    def test_build_canonicalizes_feed(self) -> None:
        feed = FeedBuilder(debug_authors=False).build(parse_feed(NITTER_RSS), "NASA")
        self.assertEqual(feed.link, "https://twitter.com/NASA")
        self.assertEqual(feed.description, "Twitter feed for NASA")
        self.assertEqual(feed.image, ICON)

        first, second = feed.items
        self.assertEqual(first.link, STATUS_LINK)
        self.assertEqual(first.id, STATUS_LINK)
        self.assertEqual(first.author, "@NASA")
        self.assertEqual(second.author, "@Space_Station")
        self.assertEqual(len(first.title), 80)
        self.assertTrue(first.title.endswith("…"))
        self.assertEqual(first.published.year, 2023)
        self.assertIn('href="https://twitter.com/BoeingSpace"', first.content)
        self.assertIn("https://pbs.twimg.com/media/Arpx24jXoAUzkc9?format=jpg", first.content)
        self.assertIn("https://twitter.com/Space_Station/status/1610000000000000000", second.content)
        self.assertNotIn("nitter.example", first.content + second.content)

    def test_rewrite_disabled_keeps_content(self) -> None:
        feed = FeedBuilder(rewrite=False, debug_authors=False).build(parse_feed(NITTER_RSS), "NASA")
        self.assertIn("nitter.example/pic/media", feed.items[0].content)
        # Links and ids are always canonicalized.
        self.assertEqual(feed.items[0].link, STATUS_LINK)

    def test_logs_author_counts(self) -> None:
        with self.assertLogs("nitter_rss_proxy.tools.rss_feed_utils", level="INFO") as logs:
            FeedBuilder().build(parse_feed(NITTER_RSS), "NASA")
        self.assertTrue(any("Authors for NASA" in line and "@Space_Station" in line for line in logs.output))

    def test_atom(self) -> None:
        rendered = FeedBuilder(FeedFormat.ATOM, debug_authors=False).render(NITTER_RSS, "NASA")
        self.assertEqual(rendered.content_type, "application/atom+xml; charset=UTF-8")
        out = feedparser.parse(rendered.body)
        self.assertEqual(out.version, "atom10")
        self.assertEqual(out.feed.link, "https://twitter.com/NASA")
        self.assertEqual(out.feed.icon, ICON)
        self.assertEqual(out.entries[0].link, STATUS_LINK)
        self.assertEqual(out.entries[0].id, STATUS_LINK)
        self.assertEqual(out.entries[0].title, LONG_TITLE[:79] + "…")
        self.assertIn("pbs.twimg.com/media/Arpx24jXoAUzkc9", out.entries[0].content[0].value)

    def test_rss(self) -> None:
        rendered = FeedBuilder(FeedFormat.RSS, debug_authors=False).render(NITTER_RSS, "NASA")
        self.assertEqual(rendered.content_type, CONTENT_TYPES[FeedFormat.RSS])
        out = feedparser.parse(rendered.body)
        self.assertEqual(out.version, "rss20")
        self.assertEqual(out.feed.link, "https://twitter.com/NASA")
        self.assertEqual(out.entries[0].link, STATUS_LINK)
        self.assertEqual(out.entries[0].id, STATUS_LINK)
        self.assertEqual(out.entries[1].author, "@Space_Station")

    def test_json(self) -> None:
        builder = FeedBuilder(FeedFormat.JSON, base_url="https://feeds.example/tw/", debug_authors=False)
        rendered = builder.render(NITTER_RSS, "NASA")
        self.assertEqual(rendered.content_type, "application/json; charset=UTF-8")
        doc = json.loads(rendered.body)
        self.assertEqual(doc["version"], "https://jsonfeed.org/version/1")
        self.assertEqual(doc["feed_url"], "https://feeds.example/tw/NASA")
        self.assertEqual(doc["icon"], ICON)
        item = doc["items"][0]
        self.assertEqual(item["id"], STATUS_LINK)
        self.assertEqual(item["url"], STATUS_LINK)
        # Plain text summary, HTML only in content_html.
        self.assertEqual(item["summary"], LONG_TITLE)
        self.assertIn("<a href=", item["content_html"])
        self.assertEqual(item["date_published"], "2023-01-03T18:30:00Z")

    def test_json_without_base_has_no_feed_url(self) -> None:
        doc = json.loads(FeedBuilder(FeedFormat.JSON, debug_authors=False).render(NITTER_RSS, "NASA").body)
        self.assertNotIn("feed_url", doc)

    def test_writer_errors_become_rewrite_errors(self) -> None:
        builder = FeedBuilder(FeedFormat.RSS, debug_authors=False)
        with mock.patch.object(builder, "_write_xml", side_effect=ValueError("Required fields not set")):
            with self.assertRaises(FeedRewriteError):
                builder.render(NITTER_RSS, "NASA")

    def test_updated_is_not_borrowed_from_pub_date(self) -> None:
        parsed = parse_feed(NITTER_RSS)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            feed = FeedBuilder(debug_authors=False).build(parsed, "NASA")
        self.assertIsNone(feed.items[0].updated)
        self.assertIsNotNone(feed.items[0].published)
        self.assertFalse([w for w in caught if "updated_parsed" in str(w.message)])


class TestItemsWithoutLinks(TestCase):
    """An item with no <guid> or <link> still gets a twitter.com id of its own."""

    def test_build(self) -> None:
        first, second = FeedBuilder(debug_authors=False).build(parse_feed(NO_LINK_RSS), "NASA").items
        self.assertEqual(first.link, "https://twitter.com")
        self.assertTrue(first.id.startswith("https://twitter.com/i/items/"))
        self.assertEqual(second.id, "https://twitter.com/Space_Station/status/1610000000000000000")
        again = FeedBuilder(debug_authors=False).build(parse_feed(NO_LINK_RSS), "NASA").items[0]
        self.assertEqual(again.id, first.id)

    def test_atom(self) -> None:
        out = feedparser.parse(FeedBuilder(FeedFormat.ATOM, debug_authors=False).render(NO_LINK_RSS, "NASA").body)
        self.assertEqual(len(out.entries), 2)
        self.assertTrue(out.entries[0].id.startswith("https://twitter.com/i/items/"))
        self.assertNotEqual(out.entries[0].id, out.entries[1].id)

    def test_rss(self) -> None:
        out = feedparser.parse(FeedBuilder(FeedFormat.RSS, debug_authors=False).render(NO_LINK_RSS, "NASA").body)
        self.assertEqual(len(out.entries), 2)
        self.assertTrue(out.entries[0].id.startswith("https://twitter.com/i/items/"))
        self.assertEqual(out.entries[1].id, "https://twitter.com/Space_Station/status/1610000000000000000")

    def test_json(self) -> None:
        doc = json.loads(FeedBuilder(FeedFormat.JSON, debug_authors=False).render(NO_LINK_RSS, "NASA").body)
        self.assertTrue(doc["items"][0]["id"].startswith("https://twitter.com/i/items/"))
        self.assertEqual(doc["items"][0]["url"], "https://twitter.com")
