"""Shared test fixtures for feedsync tests."""

import asyncio
import os
import tempfile
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from feedsync.database import Database
from feedsync.models import Feed, PushSubscription, utcnow

FEED_URL = "https://example.com/feed.xml"
HUB_URL = "https://hub.example.com/"
CALLBACK_URL = "https://reader.example.com/api/websub/callback"

SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <link rel="self" href="https://example.com/atom.xml"/>
  <link rel="hub" href="https://hub.example.com/"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <content type="html">&lt;p&gt;Full content of entry 1&lt;/p&gt;</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_PUSH_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>Push Feed</title>
    <link>https://example.com</link>
    <atom:link rel="self" href="https://example.com/feed.xml" type="application/rss+xml"/>
    <atom:link rel="hub" href="https://hub.example.com/"/>
    <description>A feed delivered by a hub</description>
    <item>
      <title>Pushed Article</title>
      <link>https://example.com/pushed-1</link>
      <description>Fresh content</description>
      <pubDate>Fri, 13 Feb 2026 11:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Pushed Article</title>
      <link>https://example.com/pushed-2</link>
      <description>More fresh content</description>
      <pubDate>Fri, 13 Feb 2026 10:30:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def make_rss(count: int, title: str = "Big Feed", prefix: str = "post") -> str:
    """RSS document with `count` items, newest first."""
    items = []
    base = utcnow().replace(microsecond=0)
    for i in range(count):
        published = base - timedelta(minutes=i)
        items.append(
            f"<item><title>Post {i}</title>"
            f"<link>https://example.com/{prefix}-{i}</link>"
            f"<description>Body {i}</description>"
            f"<pubDate>{published.strftime('%a, %d %b %Y %H:%M:%S GMT')}</pubDate>"
            f"</item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com</link>"
        + "".join(items)
        + "</channel></rss>"
    )


def trickling_response(status: int = 200, interval: float = 0.05) -> httpx.Response:
    """A response whose body arrives one byte per `interval`, without end."""

    async def body():
        while True:
            await asyncio.sleep(interval)
            yield b" "

    return httpx.Response(status, content=body())


class FakeWeb:
    """Routes requests of an httpx client to canned handlers and records them."""

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, response) -> None:
        """`response` is an httpx.Response, an exception to raise, or a callable.

        Callables may be coroutine functions; MockTransport awaits their result.
        """
        self.routes[(method.upper(), url)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        return route

    def form_posts(self, url: str) -> list[dict[str, str]]:
        """Decoded form bodies of all POSTs sent to `url`."""
        posts = []
        for request in self.requests:
            if request.method == "POST" and str(request.url) == url:
                fields = parse_qs(request.content.decode(), keep_blank_values=True)
                posts.append({k: v[0] for k, v in fields.items()})
        return posts


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """Connected database on a temporary file."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def web():
    return FakeWeb()


@pytest.fixture
def http_client(web):
    """httpx.AsyncClient whose requests are served by `web`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(web.handler))


@pytest.fixture
def make_feed(db):
    """Factory inserting a feed, due for a check by default."""

    def _make(url: str = FEED_URL, **kwargs) -> Feed:
        kwargs.setdefault("title", "Test Feed")
        kwargs.setdefault("next_check_at", utcnow() - timedelta(minutes=1))
        return db.add_feed(Feed(url=url, **kwargs))

    return _make


@pytest.fixture
def make_subscription(db):
    """Factory inserting a push subscription for a feed."""

    def _make(
        feed_id: int,
        topic_url: str = FEED_URL,
        is_active: bool = True,
        expires_in: timedelta = timedelta(days=5),
        secret: str = "s3cr3t",
        error_count: int = 0,
    ) -> PushSubscription:
        sub = db.save_subscription(PushSubscription(
            feed_id=feed_id,
            hub_url=HUB_URL,
            topic_url=topic_url,
            secret=secret,
            lease_seconds=432000,
            expires_at=utcnow() + expires_in,
            is_active=is_active,
            error_count=error_count,
        ))
        return sub

    return _make


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML advertising a hub."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_push_xml():
    """Sample RSS document as a hub would push it."""
    return SAMPLE_PUSH_RSS_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
