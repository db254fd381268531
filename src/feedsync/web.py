"""HTTP surface: push callbacks plus refresh, renewal and feed endpoints.

Endpoints:
    GET    /health                       Liveness probe
    GET    /api/websub/callback          Hub verification challenge
    POST   /api/websub/callback          Hub content notification
    POST   /api/websub/renew             Renew expiring subscriptions
    POST   /api/refresh                  Run one refresh cycle
    POST   /api/feeds                    Register a feed
    DELETE /api/feeds/{feed_id}          Remove a feed
    POST   /api/feeds/{feed_id}/reactivate  Return an unavailable feed to polling
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from feedsync.config import Config
from feedsync.database import Database
from feedsync.feed_parser import FeedFetchError, FeedParseError
from feedsync.poller import run_refresh_cycle
from feedsync.service import (
    FeedExistsError,
    FeedNotFoundError,
    FeedService,
    FolderNotFoundError,
)
from feedsync.signature import InvalidSignature, UnsupportedAlgorithm
from feedsync.websub import MissingTopic, PushSubscriber, UnknownTopic

logger = logging.getLogger(__name__)


class NewFeed(BaseModel):
    url: str
    folder_id: int | None = None


def _error(message: str, status: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _feed_json(feed) -> dict:
    data = asdict(feed)
    for key in ("last_fetched_at", "next_check_at"):
        if data[key] is not None:
            data[key] = data[key].isoformat()
    return data


def create_app(
    config: Config | None = None,
    db: Database | None = None,
    client: httpx.AsyncClient | None = None,
    subscriber: PushSubscriber | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Runtime configuration; read from the environment if None.
        db: Connected database to use. If None, one is opened from
            `config.db_path` for the lifetime of the app.
        client: HTTP client to use. If None, one is created for the
            lifetime of the app.
        subscriber: Push subscriber shared with the polling loop. If None,
            one is built on `db` and `client`.
    """
    if config is None:
        config = Config.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_db = owned_client = None
        if db is None:
            owned_db = Database(config.db_path)
            owned_db.connect()
        if client is None:
            owned_client = httpx.AsyncClient()
        _bind(app, config, db or owned_db, client or owned_client, subscriber)
        try:
            yield
        finally:
            await app.state.subscriber.drain()
            if owned_client is not None:
                await owned_client.aclose()
            if owned_db is not None:
                owned_db.close()

    app = FastAPI(title="feedsync", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/websub/callback")
    async def verify(request: Request) -> Response:
        params = request.query_params
        mode = params.get("hub.mode")
        topic = params.get("hub.topic")
        challenge = params.get("hub.challenge")
        if not mode or not topic or not challenge:
            return _error("Missing parameters", 400)

        lease_param = params.get("hub.lease_seconds")
        try:
            lease = int(lease_param) if lease_param else None
        except ValueError:
            return _error("Invalid hub.lease_seconds", 400)

        subscriber: PushSubscriber = request.app.state.subscriber
        try:
            echoed = subscriber.handle_verification(mode, topic, challenge, lease)
        except UnknownTopic:
            return _error("Unknown topic", 404)
        except ValueError as e:
            return _error(str(e), 400)
        return PlainTextResponse(echoed, status_code=200)

    @app.post("/api/websub/callback")
    async def notify(request: Request) -> Response:
        body = await request.body()
        signature = request.headers.get("x-hub-signature")
        subscriber: PushSubscriber = request.app.state.subscriber
        try:
            await subscriber.handle_notification(body, signature)
        except MissingTopic:
            return _error("Cannot determine topic", 400)
        except UnknownTopic:
            return _error("No active subscription", 404)
        except UnsupportedAlgorithm:
            return _error("Unsupported algorithm", 400)
        except InvalidSignature:
            return _error("Invalid signature", 403)
        except FeedParseError as e:
            logger.error("Push content parse failed: %s", e)
            return _error("Invalid XML", 400)
        return Response(status_code=204)

    @app.post("/api/websub/renew")
    async def renew(request: Request) -> dict:
        report = await request.app.state.subscriber.renew_expiring()
        return report.to_dict()

    @app.post("/api/refresh")
    async def refresh(request: Request) -> dict:
        result = await run_refresh_cycle(request.app.state.db, request.app.state.client)
        return result.to_dict()

    @app.post("/api/feeds")
    async def add_feed(payload: NewFeed, request: Request) -> Response:
        service: FeedService = request.app.state.service
        try:
            feed, _ = await service.add_feed(payload.url, payload.folder_id)
        except (FeedExistsError, FolderNotFoundError) as e:
            return _error(str(e), 400)
        except (FeedFetchError, FeedParseError) as e:
            return _error(f"Failed to fetch feed: {e}", 422)
        return JSONResponse(_feed_json(feed), status_code=201)

    @app.delete("/api/feeds/{feed_id}")
    async def remove_feed(feed_id: int, request: Request) -> Response:
        try:
            await request.app.state.service.remove_feed(feed_id)
        except FeedNotFoundError:
            return _error("Feed not found", 404)
        return Response(status_code=204)

    @app.post("/api/feeds/{feed_id}/reactivate")
    async def reactivate_feed(feed_id: int, request: Request) -> Response:
        try:
            feed = request.app.state.service.reactivate_feed(feed_id)
        except FeedNotFoundError:
            return _error("Feed not found", 404)
        return JSONResponse(_feed_json(feed))

    return app


def _bind(
    app: FastAPI,
    config: Config,
    db: Database,
    client: httpx.AsyncClient,
    subscriber: PushSubscriber | None,
) -> None:
    if subscriber is None:
        subscriber = PushSubscriber(db, client, config.callback_url)
    app.state.config = config
    app.state.db = db
    app.state.client = client
    app.state.subscriber = subscriber
    app.state.service = FeedService(db, client, subscriber)
