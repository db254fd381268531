"""Entry point for the feed synchronization engine: python -m feedsync"""

import asyncio
import logging

import httpx
import uvicorn

from feedsync.config import Config
from feedsync.database import Database
from feedsync.poller import start_polling
from feedsync.web import create_app
from feedsync.websub import PushSubscriber

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger("feedsync")


async def serve(config: Config) -> None:
    """Run the callback server and the polling loop until the server stops."""
    db = Database(config.db_path)
    db.connect()

    async with httpx.AsyncClient() as client:
        subscriber = PushSubscriber(db, client, config.callback_url)
        app = create_app(config, db=db, client=client, subscriber=subscriber)
        server = uvicorn.Server(uvicorn.Config(
            app, host=config.host, port=config.port, log_level="info",
        ))
        poller = asyncio.create_task(start_polling(
            db,
            client,
            subscriber,
            poll_interval=config.poll_interval,
            renew_interval=config.renew_interval,
        ))
        try:
            await server.serve()
        finally:
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
            db.close()


def main() -> None:
    config = Config.from_env()
    logger.info(
        "Starting feedsync on %s:%d (callback %s)",
        config.host, config.port, config.callback_url,
    )
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass
    logger.info("Goodbye!")


if __name__ == "__main__":
    main()
