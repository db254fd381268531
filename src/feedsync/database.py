"""SQLite storage for feeds, entries and push subscriptions."""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from feedsync.models import Entry, Feed, Folder, PushSubscription, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS folders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    "order" INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    custom_title INTEGER NOT NULL DEFAULT 0,
    folder_id INTEGER REFERENCES folders(id) ON DELETE SET NULL,
    "order" INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    is_available INTEGER NOT NULL DEFAULT 1,
    last_fetched_at TEXT,
    next_check_at TEXT NOT NULL,
    websub_hub TEXT,
    websub_topic TEXT
);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    published TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    UNIQUE(feed_id, url)
);

CREATE TABLE IF NOT EXISTS push_subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL UNIQUE REFERENCES feeds(id) ON DELETE CASCADE,
    hub_url TEXT NOT NULL,
    topic_url TEXT NOT NULL,
    secret TEXT NOT NULL,
    lease_seconds INTEGER NOT NULL,
    expires_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_feeds_next_check_at ON feeds(next_check_at);
CREATE INDEX IF NOT EXISTS idx_entries_feed_published ON entries(feed_id, published);
CREATE INDEX IF NOT EXISTS idx_entries_is_read ON entries(is_read);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_topic ON push_subscriptions(topic_url);
CREATE INDEX IF NOT EXISTS idx_push_subscriptions_expires ON push_subscriptions(expires_at);
"""


class Database:
    """SQLite database manager for the synchronization engine.

    The connection runs in autocommit mode; multi-statement writes go
    through `transaction()`.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one atomic unit.

        Nested blocks join the outermost transaction; only the outermost
        block commits or rolls back.
        """
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    # --- Folder operations ---

    def add_folder(self, folder: Folder) -> Folder:
        """Insert a new folder and return it with its assigned id."""
        cursor = self.conn.execute(
            'INSERT INTO folders (name, "order") VALUES (?, ?)',
            (folder.name, folder.order),
        )
        folder.id = cursor.lastrowid
        return folder

    def get_folder(self, folder_id: int) -> Folder | None:
        row = self.conn.execute(
            "SELECT * FROM folders WHERE id = ?", (folder_id,)
        ).fetchone()
        if row is None:
            return None
        return Folder(id=row["id"], name=row["name"], order=row["order"])

    # --- Feed operations ---

    def add_feed(self, feed: Feed) -> Feed:
        """Insert a new feed and return it with its assigned id."""
        cursor = self.conn.execute(
            """INSERT INTO feeds (url, title, custom_title, folder_id, "order",
               failure_count, is_available, last_fetched_at, next_check_at,
               websub_hub, websub_topic)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                feed.url,
                feed.title,
                int(feed.custom_title),
                feed.folder_id,
                feed.order,
                feed.failure_count,
                int(feed.is_available),
                _dt_to_str(feed.last_fetched_at),
                _dt_to_str(feed.next_check_at),
                feed.websub_hub,
                feed.websub_topic,
            ),
        )
        feed.id = cursor.lastrowid
        return feed

    def get_feed_by_id(self, feed_id: int) -> Feed | None:
        """Look up a feed by its id."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE id = ?", (feed_id,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_feed_by_url(self, url: str) -> Feed | None:
        """Look up a feed by its URL."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_max_feed_order(self) -> int | None:
        row = self.conn.execute('SELECT MAX("order") AS m FROM feeds').fetchone()
        return row["m"]

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed, its entries and its subscription (cascade)."""
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        return cursor.rowcount > 0

    def update_feed_title(self, feed_id: int, title: str, custom: bool) -> None:
        self.conn.execute(
            "UPDATE feeds SET title = ?, custom_title = ? WHERE id = ?",
            (title, int(custom), feed_id),
        )

    def get_feeds_due(self, now: datetime, limit: int) -> list[Feed]:
        """Available feeds due for a check that are not served by an active push subscription."""
        rows = self.conn.execute(
            """SELECT feeds.* FROM feeds
               LEFT JOIN push_subscriptions ps ON ps.feed_id = feeds.id
               WHERE feeds.is_available = 1
                 AND feeds.next_check_at <= ?
                 AND (ps.id IS NULL OR ps.is_active = 0)
               ORDER BY feeds.next_check_at, feeds.id
               LIMIT ?""",
            (_dt_to_str(now), limit),
        ).fetchall()
        return [_row_to_feed(r) for r in rows]

    def count_push_served_feeds_due(self, now: datetime) -> int:
        """Count available due feeds skipped because an active push subscription serves them."""
        row = self.conn.execute(
            """SELECT COUNT(*) AS cnt FROM feeds
               JOIN push_subscriptions ps ON ps.feed_id = feeds.id
               WHERE feeds.is_available = 1 AND feeds.next_check_at <= ?
                 AND ps.is_active = 1""",
            (_dt_to_str(now),),
        ).fetchone()
        return row["cnt"]

    def update_feed_success(
        self,
        feed_id: int,
        title: str | None,
        fetched_at: datetime,
        next_check_at: datetime,
        websub_hub: str | None,
        websub_topic: str | None,
    ) -> None:
        """Reset failure state after a successful fetch.

        `title` of None leaves the stored title alone; hub and topic of None
        keep the previously discovered values.
        """
        self.conn.execute(
            """UPDATE feeds SET
                 title = COALESCE(?, title),
                 last_fetched_at = ?,
                 next_check_at = ?,
                 failure_count = 0,
                 websub_hub = COALESCE(?, websub_hub),
                 websub_topic = COALESCE(?, websub_topic)
               WHERE id = ?""",
            (
                title,
                _dt_to_str(fetched_at),
                _dt_to_str(next_check_at),
                websub_hub,
                websub_topic,
                feed_id,
            ),
        )

    def update_feed_failure(
        self,
        feed_id: int,
        failure_count: int,
        next_check_at: datetime,
        is_available: bool,
    ) -> None:
        self.conn.execute(
            """UPDATE feeds SET failure_count = ?, next_check_at = ?, is_available = ?
               WHERE id = ?""",
            (failure_count, _dt_to_str(next_check_at), int(is_available), feed_id),
        )

    def reactivate_feed(self, feed_id: int, next_check_at: datetime) -> bool:
        """Return an unavailable feed to poll selection with a clean failure count."""
        cursor = self.conn.execute(
            """UPDATE feeds SET failure_count = 0, is_available = 1, next_check_at = ?
               WHERE id = ?""",
            (_dt_to_str(next_check_at), feed_id),
        )
        return cursor.rowcount > 0

    # --- Entry operations ---

    def get_entry_urls(self, feed_id: int) -> set[str]:
        """Return the URLs of all stored entries of a feed."""
        rows = self.conn.execute(
            "SELECT url FROM entries WHERE feed_id = ?", (feed_id,)
        ).fetchall()
        return {r["url"] for r in rows}

    def add_entries(self, entries: list[Entry]) -> int:
        """Insert entries, skipping duplicates. Returns count of inserted entries."""
        inserted = 0
        for entry in entries:
            try:
                cursor = self.conn.execute(
                    """INSERT INTO entries (feed_id, url, title, content, published,
                       is_read, is_starred)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.feed_id,
                        entry.url,
                        entry.title,
                        entry.content,
                        _dt_to_str(entry.published),
                        int(entry.is_read),
                        int(entry.is_starred),
                    ),
                )
            except sqlite3.IntegrityError:
                # Duplicate (feed_id, url) written by an overlapping refresh
                continue
            entry.id = cursor.lastrowid
            inserted += 1
        return inserted

    def get_entry_ids_newest_first(self, feed_id: int) -> list[int]:
        rows = self.conn.execute(
            """SELECT id FROM entries WHERE feed_id = ?
               ORDER BY published DESC, id DESC""",
            (feed_id,),
        ).fetchall()
        return [r["id"] for r in rows]

    def delete_entries(self, entry_ids: list[int]) -> int:
        """Delete entries by id. Returns count of deleted rows."""
        if not entry_ids:
            return 0
        deleted = 0
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(entry_ids), 500):
            chunk = entry_ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            cursor = self.conn.execute(
                f"DELETE FROM entries WHERE id IN ({placeholders})", chunk
            )
            deleted += cursor.rowcount
        return deleted

    def get_entries_for_feed(self, feed_id: int, limit: int = 50) -> list[Entry]:
        """Get entries for a feed, newest first."""
        rows = self.conn.execute(
            """SELECT * FROM entries WHERE feed_id = ?
               ORDER BY published DESC, id DESC LIMIT ?""",
            (feed_id, limit),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def get_entry_count_for_feed(self, feed_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM entries WHERE feed_id = ?", (feed_id,)
        ).fetchone()
        return row["cnt"]

    def get_unread_counts(self) -> dict[int, int]:
        """Unread entry count per feed id."""
        rows = self.conn.execute(
            """SELECT feed_id, COUNT(*) AS cnt FROM entries
               WHERE is_read = 0 GROUP BY feed_id"""
        ).fetchall()
        return {r["feed_id"]: r["cnt"] for r in rows}

    # --- Push subscription operations ---

    def save_subscription(self, sub: PushSubscription) -> PushSubscription:
        """Create the feed's subscription or replace its hub registration details.

        An existing row keeps its lease, activity and error state until the
        hub confirms the new registration through the verification callback.
        """
        self.conn.execute(
            """INSERT INTO push_subscriptions (feed_id, hub_url, topic_url, secret,
               lease_seconds, expires_at, is_active, error_count, last_error)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(feed_id) DO UPDATE SET
                 hub_url = excluded.hub_url,
                 topic_url = excluded.topic_url,
                 secret = excluded.secret""",
            (
                sub.feed_id,
                sub.hub_url,
                sub.topic_url,
                sub.secret,
                sub.lease_seconds,
                _dt_to_str(sub.expires_at),
                int(sub.is_active),
                sub.error_count,
                sub.last_error,
            ),
        )
        saved = self.get_subscription_for_feed(sub.feed_id)
        if saved is None:
            raise RuntimeError(f"Subscription for feed {sub.feed_id} was not saved")
        return saved

    def get_subscription_for_feed(self, feed_id: int) -> PushSubscription | None:
        row = self.conn.execute(
            "SELECT * FROM push_subscriptions WHERE feed_id = ?", (feed_id,)
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_subscription_by_topic(
        self, topic_url: str, active_only: bool = False
    ) -> PushSubscription | None:
        """Find the subscription registered for a topic URL."""
        query = "SELECT * FROM push_subscriptions WHERE topic_url = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY id LIMIT 1"
        row = self.conn.execute(query, (topic_url,)).fetchone()
        return _row_to_subscription(row) if row else None

    def get_expiring_subscriptions(
        self, before: datetime, limit: int
    ) -> list[PushSubscription]:
        """Active subscriptions expiring at or before `before`, soonest first."""
        rows = self.conn.execute(
            """SELECT * FROM push_subscriptions
               WHERE is_active = 1 AND expires_at <= ?
               ORDER BY expires_at ASC, id ASC
               LIMIT ?""",
            (_dt_to_str(before), limit),
        ).fetchall()
        return [_row_to_subscription(r) for r in rows]

    def confirm_subscription(
        self, sub_id: int, lease_seconds: int, expires_at: datetime
    ) -> None:
        """Mark a subscription verified by its hub and clear its error state."""
        self.conn.execute(
            """UPDATE push_subscriptions SET lease_seconds = ?, expires_at = ?,
               is_active = 1, error_count = 0, last_error = NULL
               WHERE id = ?""",
            (lease_seconds, _dt_to_str(expires_at), sub_id),
        )

    def deactivate_subscription(self, sub_id: int) -> None:
        self.conn.execute(
            "UPDATE push_subscriptions SET is_active = 0 WHERE id = ?", (sub_id,)
        )

    def update_subscription_error(
        self, sub_id: int, error_count: int, last_error: str, is_active: bool
    ) -> None:
        self.conn.execute(
            """UPDATE push_subscriptions SET error_count = ?, last_error = ?,
               is_active = ? WHERE id = ?""",
            (error_count, last_error, int(is_active), sub_id),
        )


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a fixed-width UTC ISO string so that stored values sort lexically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        custom_title=bool(row["custom_title"]),
        folder_id=row["folder_id"],
        order=row["order"],
        failure_count=row["failure_count"],
        is_available=bool(row["is_available"]),
        last_fetched_at=_str_to_dt(row["last_fetched_at"]),
        next_check_at=_str_to_dt(row["next_check_at"]) or utcnow(),
        websub_hub=row["websub_hub"],
        websub_topic=row["websub_topic"],
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a database row to an Entry dataclass."""
    return Entry(
        id=row["id"],
        feed_id=row["feed_id"],
        url=row["url"],
        title=row["title"],
        content=row["content"],
        published=_str_to_dt(row["published"]) or utcnow(),
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> PushSubscription:
    return PushSubscription(
        id=row["id"],
        feed_id=row["feed_id"],
        hub_url=row["hub_url"],
        topic_url=row["topic_url"],
        secret=row["secret"],
        lease_seconds=row["lease_seconds"],
        expires_at=_str_to_dt(row["expires_at"]) or utcnow(),
        is_active=bool(row["is_active"]),
        error_count=row["error_count"],
        last_error=row["last_error"],
    )
