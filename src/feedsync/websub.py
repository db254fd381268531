"""Push subscription lifecycle: subscribe, verify, receive, renew, unsubscribe.

A subscription starts pending (`is_active` false) after the hub accepts the
request, becomes active once the hub calls back with a matching challenge,
and is renewed before its lease runs out. Repeated renewal failures or an
unsubscribe confirmation deactivate it; inactive subscriptions are kept so
that polling resumes for their feed.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import httpx

from feedsync.database import Database
from feedsync.discovery import find_self_link
from feedsync.entries import store_entries
from feedsync.feed_parser import parse_feed_document
from feedsync.models import (
    PushSubscription,
    RenewalReport,
    RenewalResult,
    utcnow,
)
from feedsync.signature import InvalidSignature, generate_secret, verify_signature

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/websub/callback"
HUB_TIMEOUT = 10.0
DEFAULT_LEASE_SECONDS = 432000  # 5 days
RENEWAL_WINDOW = timedelta(days=2)
MAX_RENEWALS_PER_RUN = 20
SUBSCRIPTION_ERROR_THRESHOLD = 5


class PushError(Exception):
    """Base class for push subscription errors."""


class HubError(PushError):
    """Raised when a hub request cannot be completed."""


class HubRejected(HubError):
    """The hub answered with a non-2xx status."""


class HubTimeout(HubError):
    """The hub did not answer within HUB_TIMEOUT."""


class UnknownTopic(PushError):
    """No (active) subscription is registered for the topic."""


class MissingTopic(PushError):
    """A notification body has no self link identifying its topic."""


class PushSubscriber:
    """Manages hub registrations for feeds.

    Args:
        db: Connected database.
        client: Shared HTTP client for hub requests.
        callback_url: Public URL of the verification/notification endpoint.
    """

    def __init__(self, db: Database, client: httpx.AsyncClient, callback_url: str):
        self.db = db
        self.client = client
        self.callback_url = callback_url
        self._pending: set[asyncio.Task] = set()

    # --- Outbound ---

    async def subscribe(
        self, feed_id: int, hub_url: str, topic_url: str
    ) -> PushSubscription:
        """Ask the hub to subscribe us to a topic and store the pending subscription.

        Raises:
            HubRejected: If the hub answers with a non-2xx status.
            HubTimeout: If the hub does not answer in time.
            HubError: On other network errors.
        """
        secret = generate_secret()
        await self._post_to_hub(hub_url, {
            "hub.callback": self.callback_url,
            "hub.mode": "subscribe",
            "hub.topic": topic_url,
            "hub.secret": secret,
            "hub.lease_seconds": "",  # hub's choice
        })

        with self.db.transaction():
            saved = self.db.save_subscription(PushSubscription(
                feed_id=feed_id,
                hub_url=hub_url,
                topic_url=topic_url,
                secret=secret,
                lease_seconds=DEFAULT_LEASE_SECONDS,
                expires_at=utcnow() + timedelta(seconds=DEFAULT_LEASE_SECONDS),
                is_active=False,
            ))
        logger.info("Subscription request for %s accepted by %s", topic_url, hub_url)
        return saved

    def schedule_subscribe(
        self, feed_id: int, hub_url: str, topic_url: str
    ) -> asyncio.Task:
        """Subscribe in the background; failures are logged, never raised."""
        task = asyncio.create_task(
            self._subscribe_best_effort(feed_id, hub_url, topic_url)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _subscribe_best_effort(
        self, feed_id: int, hub_url: str, topic_url: str
    ) -> PushSubscription | None:
        try:
            return await self.subscribe(feed_id, hub_url, topic_url)
        except Exception as e:
            logger.error("Push subscription failed for feed %d: %s", feed_id, e)
            return None

    async def drain(self) -> None:
        """Wait for background subscriptions still in flight."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def unsubscribe(self, subscription: PushSubscription) -> None:
        """Best-effort unsubscribe request; logs failures and never raises."""
        try:
            await self._post_to_hub(subscription.hub_url, {
                "hub.callback": self.callback_url,
                "hub.mode": "unsubscribe",
                "hub.topic": subscription.topic_url,
            })
        except Exception as e:
            logger.warning(
                "Unsubscribe from %s failed: %s", subscription.topic_url, e
            )

    async def renew_expiring(self, now: datetime | None = None) -> RenewalReport:
        """Re-subscribe active subscriptions whose lease ends within RENEWAL_WINDOW.

        Soonest expiry first, at most MAX_RENEWALS_PER_RUN per call. A
        subscription is deactivated after SUBSCRIPTION_ERROR_THRESHOLD
        consecutive failures.
        """
        if now is None:
            now = utcnow()
        expiring = self.db.get_expiring_subscriptions(
            now + RENEWAL_WINDOW, MAX_RENEWALS_PER_RUN
        )
        report = RenewalReport()

        for sub in expiring:
            try:
                await self.subscribe(sub.feed_id, sub.hub_url, sub.topic_url)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                error_count = sub.error_count + 1
                still_active = error_count < SUBSCRIPTION_ERROR_THRESHOLD
                try:
                    with self.db.transaction():
                        self.db.update_subscription_error(
                            sub.id, error_count, message, still_active
                        )
                except Exception:
                    logger.exception(
                        "Could not record renewal failure for %s", sub.topic_url
                    )
                else:
                    if not still_active:
                        logger.warning(
                            "Subscription for %s deactivated after %d failed renewals",
                            sub.topic_url, error_count,
                        )
                report.results.append(RenewalResult(
                    feed_id=sub.feed_id,
                    status="failed",
                    error=message,
                    error_count=error_count,
                ))
                continue

            report.results.append(RenewalResult(
                feed_id=sub.feed_id,
                status="renewed",
                new_expires_at=utcnow() + timedelta(seconds=sub.lease_seconds),
            ))

        return report

    async def _post_to_hub(self, hub_url: str, data: dict[str, str]) -> None:
        try:
            response = await asyncio.wait_for(
                self.client.post(hub_url, data=data, timeout=HUB_TIMEOUT),
                timeout=HUB_TIMEOUT,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            raise HubTimeout(f"Hub request timeout after {HUB_TIMEOUT:.0f}s")
        except httpx.HTTPError as e:
            raise HubError(f"Hub request failed: {e}") from e

        if not response.is_success:
            raise HubRejected(f"Hub request failed: {response.status_code}")

    # --- Inbound ---

    def handle_verification(
        self,
        mode: str,
        topic: str,
        challenge: str,
        lease_seconds: int | None = None,
    ) -> str:
        """Confirm a hub's verification request and return the challenge to echo.

        Raises:
            ValueError: If the mode is neither subscribe nor unsubscribe.
            UnknownTopic: If no subscription exists for the topic.
        """
        if mode not in ("subscribe", "unsubscribe"):
            raise ValueError(f"Unsupported hub.mode: {mode!r}")

        sub = self.db.get_subscription_by_topic(topic)
        if sub is None:
            raise UnknownTopic(f"Unknown topic: {topic}")

        with self.db.transaction():
            if mode == "subscribe":
                lease = lease_seconds if lease_seconds is not None else DEFAULT_LEASE_SECONDS
                self.db.confirm_subscription(
                    sub.id, lease, utcnow() + timedelta(seconds=lease)
                )
                logger.info("Subscription for %s confirmed (lease %ds)", topic, lease)
            else:
                self.db.deactivate_subscription(sub.id)
                logger.info("Unsubscription for %s confirmed", topic)

        return challenge

    async def handle_notification(
        self, body: bytes, signature_header: str | None = None
    ) -> int:
        """Store the entries of a pushed feed document.

        Returns the number of new entries.

        Raises:
            MissingTopic: If the body has no self link.
            UnknownTopic: If no active subscription matches the topic.
            UnsupportedAlgorithm: If the signature is not sha256.
            InvalidSignature: If the signature does not match the body.
            FeedParseError: If the body is not a valid feed.
        """
        topic = find_self_link(body.decode("utf-8", errors="replace"))
        if not topic:
            raise MissingTopic("Cannot determine topic")

        sub = self.db.get_subscription_by_topic(topic, active_only=True)
        if sub is None:
            raise UnknownTopic(f"No active subscription for {topic}")

        if signature_header:
            try:
                verify_signature(body, signature_header, sub.secret)
            except InvalidSignature:
                logger.warning(
                    "Invalid push signature for feed %d (topic %s)",
                    sub.feed_id, topic,
                )
                raise

        parsed = await asyncio.to_thread(parse_feed_document, body)
        inserted = store_entries(self.db, sub.feed_id, parsed.entries)
        logger.info("Push for feed %d: %d new entries", sub.feed_id, inserted)
        return inserted
