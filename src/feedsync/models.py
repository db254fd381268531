"""Data models for the feed synchronization engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class Folder:
    """Groups feeds in the reader sidebar."""

    name: str
    order: int = 0
    id: int | None = None


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source and its fetch health."""

    url: str
    title: str
    custom_title: bool = False
    folder_id: int | None = None
    order: int = 0
    failure_count: int = 0
    is_available: bool = True
    last_fetched_at: datetime | None = None
    next_check_at: datetime = field(default_factory=utcnow)
    websub_hub: str | None = None
    websub_topic: str | None = None
    id: int | None = None


@dataclass
class Entry:
    """Represents a single stored article of a feed."""

    feed_id: int
    url: str
    title: str
    content: str = ""
    published: datetime = field(default_factory=utcnow)
    is_read: bool = False
    is_starred: bool = False
    id: int | None = None


@dataclass
class PushSubscription:
    """Hub registration for a feed (one per feed)."""

    feed_id: int
    hub_url: str
    topic_url: str
    secret: str
    lease_seconds: int
    expires_at: datetime
    is_active: bool = False
    error_count: int = 0
    last_error: str | None = None
    id: int | None = None


@dataclass
class ParsedEntry:
    """An entry extracted from a feed document, not yet stored."""

    url: str
    title: str
    content: str
    published: datetime


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom document."""

    title: str
    entries: list[ParsedEntry]
    hub_url: str | None = None
    topic_url: str | None = None


@dataclass
class RefreshResult:
    """Aggregate outcome of a refresh cycle."""

    refreshed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"refreshed": self.refreshed, "errors": list(self.errors)}


@dataclass
class RenewalResult:
    """Outcome of renewing one push subscription."""

    feed_id: int
    status: str
    error: str | None = None
    error_count: int | None = None
    new_expires_at: datetime | None = None

    def to_dict(self) -> dict:
        data: dict = {"feed_id": self.feed_id, "status": self.status}
        if self.error is not None:
            data["error"] = self.error
            data["error_count"] = self.error_count
        if self.new_expires_at is not None:
            data["new_expires_at"] = self.new_expires_at.isoformat()
        return data


@dataclass
class RenewalReport:
    """Aggregate outcome of a renewal run."""

    results: list[RenewalResult] = field(default_factory=list)

    @property
    def renewed(self) -> int:
        return sum(1 for r in self.results if r.status == "renewed")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    def to_dict(self) -> dict:
        return {
            "renewed": self.renewed,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }
