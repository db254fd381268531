"""Feed registration and removal on top of the synchronization engine."""

import logging

import httpx

from feedsync.database import Database
from feedsync.entries import store_entries
from feedsync.feed_parser import fetch_feed
from feedsync.models import Feed, utcnow
from feedsync.websub import PushSubscriber

logger = logging.getLogger(__name__)


class FeedExistsError(ValueError):
    """Raised when subscribing to a URL that is already registered."""


class FolderNotFoundError(ValueError):
    """Raised when a feed is assigned to a missing folder."""


class FeedNotFoundError(LookupError):
    """Raised when a feed id does not exist."""


class FeedService:
    """Adds, removes and adjusts feeds, keeping push subscriptions in step."""

    def __init__(
        self, db: Database, client: httpx.AsyncClient, subscriber: PushSubscriber
    ):
        self.db = db
        self.client = client
        self.subscriber = subscriber

    async def add_feed(self, url: str, folder_id: int | None = None) -> tuple[Feed, int]:
        """Register a feed and store its current entries.

        The feed is fetched once to learn its title and push endpoints. When
        both a hub and a topic are advertised, a push subscription is started
        in the background; its outcome never affects this call.

        Returns:
            Tuple of (saved Feed with id, count of stored entries).

        Raises:
            FeedExistsError: If the URL is already registered.
            FolderNotFoundError: If `folder_id` does not exist.
            FeedFetchError, FeedParseError: If the feed cannot be loaded.
        """
        if self.db.get_feed_by_url(url):
            raise FeedExistsError("Already subscribed to this feed")

        if folder_id is not None and self.db.get_folder(folder_id) is None:
            raise FolderNotFoundError(f"Folder {folder_id} not found")

        parsed = await fetch_feed(self.client, url)

        with self.db.transaction():
            max_order = self.db.get_max_feed_order()
            feed = self.db.add_feed(Feed(
                url=url,
                title=parsed.title or url,
                folder_id=folder_id,
                order=0 if max_order is None else max_order + 1,
                next_check_at=utcnow(),
                websub_hub=parsed.hub_url,
                websub_topic=parsed.topic_url,
            ))
            inserted = store_entries(self.db, feed.id, parsed.entries)

        logger.info("Subscribed to '%s' (%d entries)", feed.title, inserted)

        if parsed.hub_url and parsed.topic_url:
            self.subscriber.schedule_subscribe(feed.id, parsed.hub_url, parsed.topic_url)

        return feed, inserted

    async def remove_feed(self, feed_id: int) -> None:
        """Delete a feed with its entries and subscription.

        The hub is asked to unsubscribe first; that request is best-effort.
        """
        feed = self._require_feed(feed_id)

        subscription = self.db.get_subscription_for_feed(feed_id)
        if subscription is not None:
            await self.subscriber.unsubscribe(subscription)

        with self.db.transaction():
            self.db.delete_feed(feed_id)
        logger.info("Removed feed '%s'", feed.title)

    def rename_feed(self, feed_id: int, title: str) -> Feed:
        """Set a user-chosen title that refreshes will not overwrite."""
        self._require_feed(feed_id)
        with self.db.transaction():
            self.db.update_feed_title(feed_id, title, custom=True)
        return self._require_feed(feed_id)

    def reactivate_feed(self, feed_id: int) -> Feed:
        """Return a feed marked unavailable to poll selection."""
        self._require_feed(feed_id)
        with self.db.transaction():
            self.db.reactivate_feed(feed_id, next_check_at=utcnow())
        logger.info("Feed %d reactivated", feed_id)
        return self._require_feed(feed_id)

    def _require_feed(self, feed_id: int) -> Feed:
        feed = self.db.get_feed_by_id(feed_id)
        if feed is None:
            raise FeedNotFoundError(f"Feed {feed_id} not found")
        return feed
