"""Rewrite Nitter URLs embedded in item content to point at Twitter.

Public Nitter instances are frequently misconfigured (some rewrite links to
``http://localhost``, some percent-encode slashes, some base64-encode media
paths), so rather than trusting any particular host we rewrite every URL that
has the *shape* of something Twitter can serve.

The rules in :data:`DEFAULT_RULES` are applied in order, each one to the output
of the previous one.  The order is significant: the encoded-path rule must run
first because the media rules only match the decoded form.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

START = r"(?:^|\b)"
END = r"(?:$|\b)"
SCHEME = r"https?://"
HOST = r"[a-zA-Z0-9][-a-zA-Z0-9]*\.[-.a-zA-Z0-9]+"
# Nitter escapes slashes inconsistently.
SLASH = r"(?:/|%2F)"

# Hosts serving Invidious without the /watch?v= prefix.
VIDEO_FRONTEND_HOSTS = ("invidious.snopyta.org",)

_DECODED_PATH_RE = re.compile(r"[-_.~%/a-zA-Z0-9]+")


@dataclass(frozen=True)
class RewriteRule:
    """A pattern and the function that builds its replacement from a match."""

    name: str
    pattern: re.Pattern
    transform: Callable[[re.Match], str]

    def apply(self, content: str) -> str:
        return self.pattern.sub(self.transform, content)


def _keep_scheme(match: re.Match, url: str) -> str:
    # Only add a scheme if the original text had one.
    return "https://" + url if match.group(1) else url


def _unwrap_encoded_path(match: re.Match) -> str:
    payload = match.group(2)
    try:
        decoded = base64.urlsafe_b64decode(payload).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        logger.warning("Failed base64-decoding %r: %s", payload, exc)
        return match.group(0)
    if not _DECODED_PATH_RE.fullmatch(decoded):
        logger.warning("Decoded %r to unusable path %r", payload, decoded)
        return match.group(0)
    return match.group(1) + decoded


def _status_link(match: re.Match) -> str:
    return _keep_scheme(match, "twitter.com/%s/status/%s" % (match.group(2), match.group(3)))


def _image_link(match: re.Match) -> str:
    return "https://pbs.twimg.com/media/%s?format=%s" % (match.group(1), match.group(2))


def _video_link(match: re.Match) -> str:
    return "https://video.twimg.com/tweet_video/" + match.group(1)


def _video_thumb_link(match: re.Match) -> str:
    return "https://video.twimg.com/tweet_video_thumb/" + match.group(1)


def _ext_video_thumb_link(match: re.Match) -> str:
    return "https://pbs.twimg.com/ext_tw_video_thumb/%s/pu/img/%s" % (match.group(1), match.group(2))


def _youtube_link(match: re.Match) -> str:
    return _keep_scheme(match, "youtube.com/watch?v=" + match.group(2))


DEFAULT_RULES: Tuple[RewriteRule, ...] = (
    # e.g. "https://example.org/pic/enc/bWVkaWEvRm1Jc0R3SldRQUFKV2w4LmpwZw==" becomes
    # "https://example.org/pic/media/FmIsDwJWQAAJWl8.jpg" for the media rules below.
    # END can't be used: the payload may end in '=' followed by '"', both \W.
    RewriteRule(
        "encoded-path",
        re.compile(START + "(" + SCHEME + HOST + "/pic/)enc/([-_=a-zA-Z0-9]+)"),
        _unwrap_encoded_path,
    ),
    # "https://example.org/someuser/status/1234567890#m", "example.org/i/web/status/123"
    RewriteRule(
        "status-link",
        re.compile(
            START + "(" + SCHEME + ")?" + HOST + "/"
            r"([_a-zA-Z0-9]+|i/web)" + SLASH + "status" + SLASH + r"(\d+)(?:#m)?" + END
        ),
        _status_link,
    ),
    # "https://example.org/pic/media%2FA3B6MFcQXBBcIa2.jpg"
    RewriteRule(
        "image-link",
        re.compile(START + SCHEME + HOST + "/pic" + SLASH + "media" + SLASH + r"([-_a-zA-Z0-9]+)\.(jpg|png)" + END),
        _image_link,
    ),
    # "https://example.org/pic/video.twimg.com%2Ftweet_video%2FA47B3e5XMAM233z.mp4"
    RewriteRule(
        "video-link",
        re.compile(
            START + SCHEME + HOST + "/pic" + SLASH + r"video\.twimg\.com" + SLASH + "tweet_video" + SLASH
            + "([-_.a-zA-Z0-9]+)" + END
        ),
        _video_link,
    ),
    # "http://example.org/pic/tweet_video_thumb%2FA47B3e5XMAM233z.jpg"
    RewriteRule(
        "video-thumb",
        re.compile(START + SCHEME + HOST + "/pic" + SLASH + "tweet_video_thumb" + SLASH + "([-_.a-zA-Z0-9]+)" + END),
        _video_thumb_link,
    ),
    # "https://example.org/pic/ext_tw_video_thumb%2F3516826898992848541%2Fpu%2Fimg%2FaB-5ho5t2AlIL7sK.jpg"
    RewriteRule(
        "ext-video-thumb",
        re.compile(
            START + SCHEME + HOST + "/pic" + SLASH + "ext_tw_video_thumb" + SLASH + r"(\d+)"
            + SLASH + "pu" + SLASH + "img" + SLASH + "([-_.a-zA-Z0-9]+)" + END
        ),
        _ext_video_thumb_link,
    ),
    # "https://example.org/watch?v=AxWGuBDrA1u"
    RewriteRule(
        "youtube-watch",
        re.compile(START + "(" + SCHEME + ")?" + HOST + r"/watch\?v=([-_a-zA-Z0-9]+)" + END),
        _youtube_link,
    ),
    # "https://invidious.snopyta.org/AxWGuBDrA1u"
    RewriteRule(
        "youtube-frontend",
        re.compile(
            START + "(" + SCHEME + ")?(?:" + "|".join(re.escape(h) for h in VIDEO_FRONTEND_HOSTS) + ")/"
            + "([-_a-zA-Z0-9]{8,})" + END
        ),
        _youtube_link,
    ),
)


def _location_rule(location: str) -> Optional[RewriteRule]:
    """Build a rule sending remaining links on the serving mirror to twitter.com.

    This catches account links ("/NASA") and searches ("/search?q=%23foo").
    Media paths under /pic are left alone since Twitter doesn't serve them.
    """
    try:
        host = urlsplit(location).hostname
    except ValueError as exc:
        logger.warning("Failed parsing location %r: %s", location, exc)
        return None
    if not host:
        return None
    pattern = re.compile(
        START + SCHEME + re.escape(host) + r"(?::\d+)?" + r"(?=/|$|[^-.:a-zA-Z0-9])(?!" + SLASH + r"pic\b)",
        re.IGNORECASE,
    )
    return RewriteRule("mirror-link", pattern, lambda match: "https://twitter.com")


class ContentRewriter:
    """Applies an ordered tuple of :class:`RewriteRule` to HTML content."""

    def __init__(self, rules: Tuple[RewriteRule, ...] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def rewrite(self, content: str, location: Optional[str] = None) -> str:
        """Rewrite ``content``.

        ``location`` is the URL the item was served from.  When given, links
        pointing back at that mirror are rewritten as well.
        """
        rules = self.rules
        if location:
            extra = _location_rule(location)
            if extra is not None:
                rules = rules + (extra,)
        for rule in rules:
            content = rule.apply(content)

        # Make sure that newlines are preserved.
        return content.replace("\n", "<br>")


_default_rewriter = ContentRewriter()


def rewrite_content(content: str, location: Optional[str] = None) -> str:
    return _default_rewriter.rewrite(content, location)
