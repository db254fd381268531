"""Entry deduplication and retention."""

import logging

from feedsync.database import Database
from feedsync.models import Entry, ParsedEntry

logger = logging.getLogger(__name__)

RETENTION_LIMIT = 200


def merge_entries(db: Database, feed_id: int, candidates: list[ParsedEntry]) -> int:
    """Insert the candidates whose URL the feed does not already have.

    Returns the number of inserted entries. Applying the same candidates
    twice inserts nothing the second time.
    """
    existing = db.get_entry_urls(feed_id)
    new_entries = []
    for candidate in candidates:
        if candidate.url in existing:
            continue
        # Guards against repeated URLs within one document
        existing.add(candidate.url)
        new_entries.append(Entry(
            feed_id=feed_id,
            url=candidate.url,
            title=candidate.title,
            content=candidate.content,
            published=candidate.published,
        ))
    if not new_entries:
        return 0
    return db.add_entries(new_entries)


def trim_entries(db: Database, feed_id: int, keep: int = RETENTION_LIMIT) -> int:
    """Delete all but the `keep` most recently published entries of a feed.

    Returns the number of deleted entries.
    """
    entry_ids = db.get_entry_ids_newest_first(feed_id)
    if len(entry_ids) <= keep:
        return 0
    deleted = db.delete_entries(entry_ids[keep:])
    logger.debug("Feed %d: trimmed %d old entries", feed_id, deleted)
    return deleted


def store_entries(db: Database, feed_id: int, candidates: list[ParsedEntry]) -> int:
    """Merge then trim in one transaction. Returns the inserted count."""
    with db.transaction():
        inserted = merge_entries(db, feed_id, candidates) if candidates else 0
        trim_entries(db, feed_id)
    return inserted
