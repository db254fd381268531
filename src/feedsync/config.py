"""Runtime configuration read from the environment."""

import os
from dataclasses import dataclass

from feedsync.websub import CALLBACK_PATH

DEFAULT_DB_PATH = "feedsync.db"
DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_POLL_INTERVAL = 900  # 15 minutes
DEFAULT_RENEW_INTERVAL = 3600
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@dataclass
class Config:
    db_path: str = DEFAULT_DB_PATH
    base_url: str = DEFAULT_BASE_URL
    poll_interval: int = DEFAULT_POLL_INTERVAL
    renew_interval: int = DEFAULT_RENEW_INTERVAL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def callback_url(self) -> str:
        """URL the hub calls for verification and notification."""
        return self.base_url.rstrip("/") + CALLBACK_PATH

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            db_path=os.environ.get("FEEDSYNC_DB_PATH", DEFAULT_DB_PATH),
            base_url=os.environ.get("FEEDSYNC_BASE_URL", DEFAULT_BASE_URL),
            poll_interval=int(
                os.environ.get("FEEDSYNC_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
            ),
            renew_interval=int(
                os.environ.get("FEEDSYNC_RENEW_INTERVAL", DEFAULT_RENEW_INTERVAL)
            ),
            host=os.environ.get("FEEDSYNC_HOST", DEFAULT_HOST),
            port=int(os.environ.get("FEEDSYNC_PORT", DEFAULT_PORT)),
        )
