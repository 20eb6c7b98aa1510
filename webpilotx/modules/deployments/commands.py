import shlex
import signal
import subprocess
import threading
import time
import logging
from typing import Dict, List, Optional

from webpilotx.modules.deployments import process_registry
from webpilotx.modules.deployments.log_store import DeploymentLog

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_CANCELLED = 130

READ_CHUNK_SIZE = 65536
# Seconds to wait for output after the command itself has exited
OUTPUT_DRAIN_SEC = 2.0


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until a time.monotonic() deadline; None means no deadline."""
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def run_streamed(
    cmd: List[str],
    log: DeploymentLog,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    deployment_id: Optional[int] = None,
    deadline: Optional[float] = None,
    display: Optional[str] = None,
) -> int:
    """Run cmd with stdout and stderr merged, copying output into the log as it arrives.

    The process is registered under deployment_id so it can be terminated from
    another thread. Returns the exit code, or EXIT_TIMEOUT when the deadline
    passed first.
    """
    log.line(f"$ {display or shlex.join(cmd)}")
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
        )
    except FileNotFoundError:
        log.line(f"Command not found: {cmd[0]}")
        return EXIT_NOT_FOUND
    if deployment_id is not None:
        process_registry.register(deployment_id, proc)

    stopped = threading.Event()

    def stream_output():
        for chunk in iter(lambda: proc.stdout.read1(READ_CHUNK_SIZE), b""):
            if stopped.is_set():
                break
            log.append(chunk)

    stream_thread = threading.Thread(target=stream_output, daemon=True)
    stream_thread.start()
    timed_out = False
    try:
        try:
            proc.wait(timeout=remaining_time(deadline))
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"Command timed out for deployment {deployment_id}: {cmd[0]}")
            if deployment_id is None or not process_registry.terminate(deployment_id):
                proc.kill()
                proc.wait()
        stream_thread.join(timeout=OUTPUT_DRAIN_SEC)
        if stream_thread.is_alive():
            # Background children of the command still hold the pipe open
            log.line("Stopping background processes left behind by the command.")
            process_registry.signal_group(proc, signal.SIGKILL)
            stream_thread.join(timeout=OUTPUT_DRAIN_SEC)
    finally:
        stopped.set()
        if not stream_thread.is_alive():
            proc.stdout.close()
        else:
            logger.warning(f"Output of {cmd[0]} is still open after the command exited; ignoring it")
        if deployment_id is not None:
            process_registry.unregister(deployment_id)
    if timed_out:
        log.line("Deadline exceeded, process terminated.")
        return EXIT_TIMEOUT
    return proc.returncode


def run_captured(cmd: List[str], log: DeploymentLog, timeout: Optional[float] = None) -> int:
    """Run a short command to completion and append its output to the log."""
    log.line(f"$ {shlex.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )
    except FileNotFoundError:
        log.line(f"Command not found: {cmd[0]}")
        return EXIT_NOT_FOUND
    except subprocess.TimeoutExpired:
        log.line(f"Command timed out after {timeout}s")
        return EXIT_TIMEOUT
    for stream in (result.stdout, result.stderr):
        if stream and stream.strip():
            log.append(stream if stream.endswith("\n") else stream + "\n")
    if result.returncode != 0:
        log.line(f"Exited with code {result.returncode}")
    return result.returncode
