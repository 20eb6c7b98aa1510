import secrets
import threading
import logging
from pathlib import Path

from webpilotx.config import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()


def webhook_secret_path() -> Path:
    return Path(settings.pages_dir) / "webhook_secret"


def get_or_create_webhook_secret() -> str:
    """Shared secret for push notifications. Configured value wins; otherwise persisted under pages_dir."""
    if settings.webhook_secret:
        return settings.webhook_secret
    path = webhook_secret_path()
    with _lock:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(secrets.token_hex(32), encoding="utf-8")
            path.chmod(0o600)
            logger.info("Generated and saved new webhook secret.")
        return path.read_text(encoding="utf-8").strip()
