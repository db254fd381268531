"""RSS/Atom feed fetching, parsing and sanitization."""

import asyncio
import calendar
import io
from datetime import datetime, timezone
from time import struct_time
from urllib.parse import urlparse

import bleach
import feedparser
import httpx

from feedsync.discovery import discover_endpoints
from feedsync.models import ParsedEntry, ParsedFeed, utcnow

FETCH_TIMEOUT = 30.0
MAX_ENTRIES = 200
MAX_CONTENT_LENGTH = 50_000
TRUNCATION_MARKER = "... [content truncated]"

# Some hosts reject non-browser user agents
REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
}

ALLOWED_TAGS = [
    "p", "br", "strong", "em", "a", "ul", "ol", "li", "code", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "img",
]
ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "target"],
    "img": ["src", "alt", "title", "width", "height"],
}
ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


class FeedFetchError(Exception):
    """Raised when a feed cannot be downloaded."""


class FeedParseError(Exception):
    """Raised when a document is not a usable RSS or Atom feed."""


def sanitize_content(html: str) -> str:
    """Reduce untrusted feed HTML to the allowed tags, attributes and URL schemes."""
    if not html:
        return ""
    return bleach.clean(
        html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )


def truncate_content(content: str) -> str:
    if len(content) > MAX_CONTENT_LENGTH:
        return content[:MAX_CONTENT_LENGTH] + TRUNCATION_MARKER
    return content


def parse_feed_document(raw: str | bytes, fallback_title: str = "") -> ParsedFeed:
    """Parse an RSS or Atom document into normalized entries.

    Entries without both a link and a title are dropped. At most
    `MAX_ENTRIES` entries are kept, in document order.

    Args:
        raw: The feed document.
        fallback_title: Title to use when the document has none.

    Raises:
        FeedParseError: If the document is malformed or not a feed.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    # A stream keeps feedparser from treating the document as a URL or path
    parsed = feedparser.parse(io.BytesIO(raw))

    if not parsed.entries:
        if parsed.bozo:
            raise FeedParseError(
                f"Malformed feed document: {parsed.get('bozo_exception')}"
            )
        if not parsed.get("version"):
            raise FeedParseError("Document is not a valid RSS or Atom feed")

    entries = _extract_entries(parsed.entries)

    return ParsedFeed(
        title=parsed.feed.get("title") or fallback_title,
        entries=entries[:MAX_ENTRIES],
    )


async def fetch_feed(client: httpx.AsyncClient, url: str) -> ParsedFeed:
    """Fetch and parse a feed, including its push endpoints.

    Raises:
        FeedFetchError: If the URL is invalid or the request fails.
        FeedParseError: If the response is not a valid feed.
    """
    _validate_url(url)

    # httpx timeouts apply per phase; wait_for bounds the whole download
    try:
        response = await asyncio.wait_for(
            client.get(
                url,
                headers=REQUEST_HEADERS,
                timeout=FETCH_TIMEOUT,
                follow_redirects=True,
            ),
            timeout=FETCH_TIMEOUT,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        raise FeedFetchError(f"Timed out after {FETCH_TIMEOUT:.0f}s")
    except httpx.HTTPError as e:
        raise FeedFetchError(f"Request failed: {e}") from e

    if not response.is_success:
        raise FeedFetchError(
            f"HTTP {response.status_code}: {response.reason_phrase}"
        )

    parsed = await asyncio.to_thread(parse_feed_document, response.content, url)
    endpoints = discover_endpoints(url, response.text, response.headers)
    parsed.hub_url = endpoints.hub_url
    parsed.topic_url = endpoints.topic_url
    return parsed


def _validate_url(url: str) -> None:
    """Validate that the URL has a valid format."""
    try:
        result = urlparse(url)
    except ValueError:
        raise FeedFetchError("Invalid URL format")
    if not result.scheme or not result.netloc:
        raise FeedFetchError("Invalid URL format")
    if result.scheme not in ("http", "https"):
        raise FeedFetchError("Invalid URL format: only http and https are supported")


def _extract_entries(raw_entries: list) -> list[ParsedEntry]:
    """Convert feedparser entries to ParsedEntry objects, in document order."""
    entries = []
    for raw in raw_entries:
        link = raw.get("link")
        title = raw.get("title")
        if not link or not title:
            continue

        content = sanitize_content(_raw_content(raw))
        entries.append(ParsedEntry(
            url=link,
            title=title,
            content=truncate_content(content),
            published=_parse_date(raw) or utcnow(),
        ))
    return entries


def _raw_content(entry: dict) -> str:
    """Full content when present, else summary, else empty."""
    for block in entry.get("content") or []:
        value = block.get("value")
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry (struct_time in UTC)."""
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if isinstance(time_struct, struct_time):
            try:
                return datetime.fromtimestamp(
                    calendar.timegm(time_struct), tz=timezone.utc
                )
            except (ValueError, OverflowError):
                continue
    return None
