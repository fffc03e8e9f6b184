"""Runtime configuration for the sync service, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/kanban_sync.db")


def _env_int(name: str, default: int) -> int:
    """Read a positive integer env var. Falls back to default on parse error."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, got %d; defaulting to %d", name, value, default)
        return default
    return value


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class SyncConfig:
    """Everything the service needs to wire itself together.

    Build with ``SyncConfig.from_env()`` after ``load_dotenv()`` has run.
    """

    db_path: Path = field(default_factory=lambda: _DEFAULT_DB_PATH)
    project_id: str = ""
    topic_name: str = "projects/my-project/topics/gmail-updates"
    subscription_name: str = "gmail-updates-sub"
    watch_label_ids: list[str] = field(default_factory=lambda: ["INBOX"])
    notification_strategy: str = "PULL"
    sweep_interval_seconds: int = 60
    watch_renew_within_hours: int = 24
    pull_max_messages: int = 10
    max_concurrent_syncs: int = 8
    token_dir: Path = field(default_factory=lambda: Path("data/tokens"))
    service_account_key: str = ""
    jwt_secret: str = ""
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def subscription_path(self) -> str:
        """Fully-qualified Pub/Sub subscription name."""
        if self.subscription_name.startswith("projects/"):
            return self.subscription_name
        return f"projects/{self.project_id}/subscriptions/{self.subscription_name}"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Build SyncConfig from environment variables."""
        return cls(
            db_path=Path(os.environ.get("KANBAN_SYNC_DB_PATH", str(_DEFAULT_DB_PATH))),
            project_id=os.environ.get("GOOGLE_PROJECT_ID", ""),
            topic_name=os.environ.get(
                "GMAIL_TOPIC_NAME", "projects/my-project/topics/gmail-updates"
            ),
            subscription_name=os.environ.get("GMAIL_SUBSCRIPTION_NAME", "gmail-updates-sub"),
            watch_label_ids=_env_list("GMAIL_WATCH_LABEL_IDS", ["INBOX"]),
            notification_strategy=os.environ.get("NOTIFICATION_STRATEGY", "PULL").upper(),
            sweep_interval_seconds=_env_int("SNOOZE_SWEEP_INTERVAL_SECONDS", 60),
            watch_renew_within_hours=_env_int("WATCH_RENEW_WITHIN_HOURS", 24),
            pull_max_messages=_env_int("PULL_MAX_MESSAGES", 10),
            max_concurrent_syncs=_env_int("MAX_CONCURRENT_SYNCS", 8),
            token_dir=Path(os.environ.get("GMAIL_TOKEN_DIR", "data/tokens")),
            service_account_key=os.environ.get("GOOGLE_SERVICE_ACCOUNT_KEY", ""),
            jwt_secret=os.environ.get("JWT_SECRET", ""),
            host=os.environ.get("KANBAN_SYNC_HOST", "0.0.0.0"),
            port=_env_int("KANBAN_SYNC_PORT", 8000),
        )
