import logging
from pathlib import Path
from typing import Union

from webpilotx.config import settings
from webpilotx.modules.deployments import log_channel

logger = logging.getLogger(__name__)

INITIAL_LOG_TEXT = "Deployment initialized. Logs will appear here.\n"
COMPLETION_SENTINEL = "===DEPLOYMENT COMPLETED==="

MARKER_CLONE = "CLONING REPOSITORY"
MARKER_PULL = "PULLING REPOSITORY"
MARKER_ENV = "WRITING ENV FILE"
MARKER_BUILD = "RUNNING BUILD SCRIPT"
MARKER_SYSTEMD = "CONFIGURING SYSTEMD SERVICE"
MARKER_ERROR = "DEPLOYMENT ERROR"

NO_BUILD_SCRIPT_TEXT = "No build script provided."


def log_path(deployment_id: int) -> Path:
    return settings.deployment_logs_dir / f"{deployment_id}.log"


def sealed_marker_path(deployment_id: int) -> Path:
    return settings.deployment_logs_dir / f"{deployment_id}.complete"


class DeploymentLog:
    """Append-only build log of one deployment.

    Every append is published on the deployment's log channel so live
    readers wake up as soon as output arrives. Once the completion sentinel
    has been written the log is sealed: a marker file records it and later
    appends are dropped, so build output that happens to contain the
    sentinel text never counts as completion.
    """

    def __init__(self, deployment_id: int):
        self.deployment_id = deployment_id
        self.path = log_path(deployment_id)
        self.sealed_path = sealed_marker_path(deployment_id)

    def exists(self) -> bool:
        return self.path.is_file()

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        channel = log_channel.get_channel(self.deployment_id)
        with channel.write_lock:
            self.sealed_path.unlink(missing_ok=True)
            self.path.write_bytes(INITIAL_LOG_TEXT.encode())
            channel.publish(self.path.stat().st_size)
        logger.info(f"Created log file: {self.path}")

    def append(self, data: Union[str, bytes]) -> bool:
        """Append to the log. Returns False if the log is already sealed."""
        if isinstance(data, str):
            data = data.encode()
        if not data:
            return True
        channel = log_channel.get_channel(self.deployment_id)
        with channel.write_lock:
            if self.is_complete():
                logger.debug(f"Dropped {len(data)} bytes written to sealed log {self.deployment_id}")
                return False
            with open(self.path, "ab") as f:
                f.write(data)
                f.flush()
                channel.publish(f.tell())
        return True

    def line(self, text: str) -> bool:
        return self.append(text + "\n")

    def marker(self, title: str) -> bool:
        return self.append(f"\n==={title}===\n")

    def error(self, message: str) -> bool:
        return self.append(f"\n==={MARKER_ERROR}===\n{message}\n")

    def read(self, offset: int = 0) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(offset)
            return f.read()

    def is_complete(self) -> bool:
        return self.sealed_path.exists()

    def complete(self) -> None:
        """Append the completion sentinel and seal the log; nothing is written after it."""
        channel = log_channel.get_channel(self.deployment_id)
        with channel.write_lock:
            if self.is_complete():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "ab") as f:
                f.write(f"\n{COMPLETION_SENTINEL}\n".encode())
                f.flush()
                size = f.tell()
            self.sealed_path.touch()
            channel.publish(size)
        log_channel.close_channel(self.deployment_id)
