import re
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from webpilotx.config import settings
from webpilotx.modules.deployments.commands import run_captured
from webpilotx.modules.deployments.log_store import DeploymentLog, MARKER_SYSTEMD
from webpilotx.modules.pages.schemas import EnvVar

logger = logging.getLogger(__name__)

_UNSAFE_UNIT_CHARS = re.compile(r"[^A-Za-z0-9_.@-]")


def service_name(page_name: str) -> str:
    """Stable systemd unit name for a page."""
    safe = _UNSAFE_UNIT_CHARS.sub("-", page_name.strip()) or "page"
    return f"{settings.service_name_prefix}-{safe}.service"


def unit_path(page_name: str) -> Path:
    return Path(settings.systemd_unit_dir) / service_name(page_name)


def _escape_environment(value: str) -> str:
    # systemd unquotes C-style escapes and expands % specifiers inside Environment=
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")


def entry_command(work_dir: Path, build_output_dir: Optional[str] = None) -> str:
    base = Path(work_dir)
    if build_output_dir and build_output_dir.strip():
        base = base / build_output_dir.strip().strip("/")
    return f"{settings.runtime_binary} {base / settings.service_entry_script}"


def render_unit(
    page_name: str,
    work_dir: Path,
    build_output_dir: Optional[str],
    env_entries: Iterable[EnvVar],
) -> str:
    lines = [
        "[Unit]",
        f"Description={settings.service_name_prefix} page {page_name}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
        f"WorkingDirectory={work_dir}",
        f"ExecStart={entry_command(work_dir, build_output_dir)}",
        "Restart=always",
    ]
    for entry in env_entries:
        lines.append(f'Environment="{_escape_environment(entry.name)}={_escape_environment(entry.value)}"')
    lines += [
        "",
        "[Install]",
        "WantedBy=default.target",
        "",
    ]
    return "\n".join(lines)


class ServiceProvisioner:
    """Generates a page's user unit and hands it to systemd."""

    def _systemctl(self, *args: str) -> List[str]:
        return [settings.systemctl_binary, "--user", *args]

    def provision(
        self,
        page_name: str,
        work_dir: Path,
        build_output_dir: Optional[str],
        env_entries: Iterable[EnvVar],
        log: DeploymentLog,
    ) -> bool:
        """
        Write the unit descriptor, then reload, enable and (re)start it.
        All three systemctl calls are attempted; returns True only if every one succeeded.
        """
        log.marker(MARKER_SYSTEMD)
        name = service_name(page_name)
        path = unit_path(page_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_unit(page_name, work_dir, build_output_dir, env_entries))
        log.line(f"Wrote service file {path}")
        logger.info(f"Wrote unit {path}")

        timeout = settings.command_timeout_seconds
        ok = True
        for args in (("daemon-reload",), ("enable", name), ("restart", name)):
            code = run_captured(self._systemctl(*args), log, timeout=timeout)
            if code != 0:
                ok = False
                logger.error(f"systemctl {' '.join(args)} failed with exit code {code}")
        if ok:
            log.line(f"Service {name} is enabled and (re)started.")
        else:
            log.line(f"Service {name} could not be fully activated.")
        return ok

    def remove(self, page_name: str, log: Optional[DeploymentLog] = None) -> bool:
        """Stop, disable and delete a page's unit, then reload systemd. Errors are logged, not raised."""
        name = service_name(page_name)
        path = unit_path(page_name)
        ok = True
        timeout = settings.command_timeout_seconds
        sink = log or _LoggerSink(name)
        for args in (("stop", name), ("disable", name)):
            if run_captured(self._systemctl(*args), sink, timeout=timeout) != 0:
                ok = False
        try:
            path.unlink()
            logger.info(f"Service file {path} deleted.")
        except FileNotFoundError:
            pass
        except OSError as e:
            ok = False
            logger.error(f"Failed to delete service file {path}: {e}")
        if run_captured(self._systemctl("daemon-reload"), sink, timeout=timeout) != 0:
            ok = False
        if not ok:
            logger.warning(f"Service {name} was not removed cleanly")
        return ok


class _LoggerSink:
    """Stands in for a deployment log when there is no deployment to narrate to."""

    def __init__(self, name: str):
        self.name = name

    def line(self, text: str) -> None:
        logger.info(f"[{self.name}] {text}")

    def append(self, data) -> None:
        if isinstance(data, bytes):
            data = data.decode(errors="replace")
        for text in data.splitlines():
            self.line(text)
