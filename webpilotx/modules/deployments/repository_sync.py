import base64
import os
import re
import shutil
import logging
from pathlib import Path
from typing import Dict, Optional

from webpilotx.config import settings
from webpilotx.modules.deployments.commands import run_streamed
from webpilotx.modules.deployments.log_store import DeploymentLog, MARKER_CLONE, MARKER_PULL

logger = logging.getLogger(__name__)

_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)


def redact_url(text: str) -> str:
    """Mask the userinfo part of any URL in text."""
    return _URL_CREDENTIALS.sub(r"\g<scheme>***@", text)


def repository_url(repo: str) -> str:
    return f"{settings.git_base_url.rstrip('/')}/{repo}.git"


class RepositorySync:
    """Clone or update a page's working tree at the head of its branch."""

    def __init__(self, token: Optional[str] = None):
        self.token = token

    def _git_env(self) -> Dict[str, str]:
        """
        Environment for git subprocesses.
        The access token travels as an HTTP header through GIT_CONFIG_* variables,
        so it never shows up on the command line, in the log or in .git/config.
        """
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.token:
            basic = base64.b64encode(f"x-access-token:{self.token}".encode()).decode()
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = f"http.{settings.git_base_url.rstrip('/')}/.extraheader"
            env["GIT_CONFIG_VALUE_0"] = f"AUTHORIZATION: basic {basic}"
        return env

    def _git(self, args, log: DeploymentLog, cwd: Optional[Path] = None, **kwargs) -> int:
        cmd = [settings.git_binary, *args]
        return run_streamed(
            cmd,
            log,
            cwd=str(cwd) if cwd else None,
            env=self._git_env(),
            display=redact_url(" ".join(cmd)),
            **kwargs,
        )

    def sync(
        self,
        repo: str,
        branch: str,
        work_dir: Path,
        log: DeploymentLog,
        deployment_id: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> int:
        """
        Bring work_dir to the head of branch.

        Returns the first non-zero git exit code, or 0. A failed sync leaves
        the working tree as it is for diagnosis and the next attempt.
        """
        url = repository_url(repo)
        run_kwargs = {"deployment_id": deployment_id, "deadline": deadline}
        work_dir = Path(work_dir)

        if (work_dir / ".git").exists():
            log.marker(MARKER_PULL)
            logger.info(f"Updating working tree {work_dir} to {repo}@{branch}")
            steps = [
                ["remote", "set-url", "origin", url],
                ["fetch", "origin", branch],
                ["checkout", "-f", "-B", branch, "FETCH_HEAD"],
            ]
            for args in steps:
                code = self._git(args, log, cwd=work_dir, **run_kwargs)
                if code != 0:
                    log.line(f"git {args[0]} failed with exit code {code}")
                    return code
            return 0

        log.marker(MARKER_CLONE)
        if work_dir.exists() and any(work_dir.iterdir()):
            log.line(f"Removing leftover files in {work_dir}")
            shutil.rmtree(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {repo}@{branch} into {work_dir}")
        code = self._git(
            ["clone", "--branch", branch, "--single-branch", url, str(work_dir)],
            log,
            **run_kwargs,
        )
        if code != 0:
            log.line(f"git clone failed with exit code {code}")
        return code
