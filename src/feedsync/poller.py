"""Scheduled polling of due feeds."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from feedsync.backoff import DEFAULT_BASE_INTERVAL, is_available, next_check_time
from feedsync.database import Database
from feedsync.entries import store_entries
from feedsync.feed_parser import fetch_feed
from feedsync.models import Feed, RefreshResult, utcnow
from feedsync.websub import PushSubscriber

logger = logging.getLogger(__name__)

MAX_FEEDS_PER_CYCLE = 50
BATCH_SIZE = 10


@dataclass
class FeedOutcome:
    """Result of refreshing one feed; `error` is None on success."""

    feed: Feed
    inserted: int = 0
    error: str | None = None


def select_due_feeds(db: Database, now: datetime | None = None) -> list[Feed]:
    """Feeds to poll this cycle: available, due, and not push-served."""
    if now is None:
        now = utcnow()
    feeds = db.get_feeds_due(now, MAX_FEEDS_PER_CYCLE)
    skipped = db.count_push_served_feeds_due(now)
    if skipped > 0:
        logger.info("Skipping %d feed(s) with active push subscriptions", skipped)
    return feeds


async def refresh_feed(
    db: Database,
    client: httpx.AsyncClient,
    feed: Feed,
    base_interval: timedelta = DEFAULT_BASE_INTERVAL,
) -> FeedOutcome:
    """Fetch one feed and record the outcome. Never raises for fetch or parse errors."""
    try:
        parsed = await fetch_feed(client, feed.url)
        now = utcnow()
        with db.transaction():
            inserted = store_entries(db, feed.id, parsed.entries)
            db.update_feed_success(
                feed.id,
                title=None if feed.custom_title else parsed.title,
                fetched_at=now,
                next_check_at=next_check_time(0, base_interval, now),
                websub_hub=parsed.hub_url,
                websub_topic=parsed.topic_url,
            )
    except Exception as e:
        logger.warning("Feed '%s' error: %s", feed.title, e)
        _record_failure(db, feed, base_interval)
        return FeedOutcome(feed=feed, error=str(e) or e.__class__.__name__)

    if inserted:
        logger.info("Feed '%s': %d new entries", feed.title, inserted)
    return FeedOutcome(feed=feed, inserted=inserted)


def _record_failure(db: Database, feed: Feed, base_interval: timedelta) -> None:
    """Bump the feed's failure count and push its next check out."""
    try:
        with db.transaction():
            current = db.get_feed_by_id(feed.id)
            if current is None:
                return
            failure_count = current.failure_count + 1
            db.update_feed_failure(
                feed.id,
                failure_count=failure_count,
                next_check_at=next_check_time(failure_count, base_interval),
                is_available=is_available(failure_count),
            )
    except Exception:
        logger.exception("Could not record failure for feed '%s'", feed.title)
        return

    if not is_available(failure_count):
        logger.warning(
            "Feed '%s' marked unavailable after %d consecutive failures",
            feed.title, failure_count,
        )


async def run_refresh_cycle(
    db: Database,
    client: httpx.AsyncClient,
    base_interval: timedelta = DEFAULT_BASE_INTERVAL,
    now: datetime | None = None,
) -> RefreshResult:
    """Poll all due feeds once in bounded concurrent batches.

    Per-feed failures are collected as `"<title> (<url>): <message>"`
    strings; none of them aborts the cycle.
    """
    feeds = select_due_feeds(db, now)
    result = RefreshResult()

    for start in range(0, len(feeds), BATCH_SIZE):
        batch = feeds[start:start + BATCH_SIZE]
        outcomes = await asyncio.gather(
            *(refresh_feed(db, client, feed, base_interval) for feed in batch),
            return_exceptions=True,
        )
        for feed, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                result.errors.append(f"{feed.title} ({feed.url}): {outcome}")
            elif outcome.error is not None:
                result.errors.append(f"{feed.title} ({feed.url}): {outcome.error}")
            else:
                result.refreshed += 1

    if feeds:
        logger.info(
            "Refresh cycle complete: %d refreshed, %d failed",
            result.refreshed, len(result.errors),
        )
    return result


async def start_polling(
    db: Database,
    client: httpx.AsyncClient,
    subscriber: PushSubscriber,
    poll_interval: int,
    renew_interval: int,
) -> None:
    """Run refresh cycles and subscription renewals indefinitely."""
    logger.info(
        "Poller started (poll interval: %ds, renew interval: %ds)",
        poll_interval, renew_interval,
    )
    loop = asyncio.get_running_loop()
    next_renewal = loop.time()

    while True:
        try:
            await run_refresh_cycle(db, client)
        except Exception as e:
            logger.error("Refresh cycle failed: %s", e)

        if loop.time() >= next_renewal:
            try:
                report = await subscriber.renew_expiring()
                if report.results:
                    logger.info(
                        "Renewal run complete: %d renewed, %d failed",
                        report.renewed, report.failed,
                    )
            except Exception as e:
                logger.error("Renewal run failed: %s", e)
            next_renewal = loop.time() + renew_interval

        await asyncio.sleep(poll_interval)
