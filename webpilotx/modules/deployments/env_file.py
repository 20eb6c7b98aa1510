import os
import logging
from pathlib import Path
from typing import Dict, Iterable

from webpilotx.config import settings
from webpilotx.modules.pages.schemas import EnvVar

logger = logging.getLogger(__name__)


def render_env_file(entries: Iterable[EnvVar]) -> str:
    """One NAME="value" line per entry. Values are written verbatim."""
    return "".join(f'{entry.name}="{entry.value}"\n' for entry in entries)


def write_env_file(work_dir: Path, entries: Iterable[EnvVar]) -> Path:
    """Write the page's env file into its working tree, replacing any previous one."""
    path = Path(work_dir) / settings.env_file_name
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(render_env_file(entries))
    os.chmod(path, 0o600)
    logger.info(f"Wrote env file {path}")
    return path


def build_environment(entries: Iterable[EnvVar]) -> Dict[str, str]:
    """Process environment for the build recipe: the server's environment plus the page's entries."""
    env = os.environ.copy()
    env.update({entry.name: entry.value for entry in entries})
    return env
