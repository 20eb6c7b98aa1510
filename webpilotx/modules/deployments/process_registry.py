"""Thread-safe registry of deployment_id -> running child process for hard cancel and deadlines."""
import os
import signal
import threading
import subprocess
import logging

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_registry: dict[int, subprocess.Popen] = {}


def register(deployment_id: int, process: subprocess.Popen) -> None:
    with _lock:
        _registry[deployment_id] = process
        logger.debug(f"Registered process {process.pid} for deployment {deployment_id}")


def unregister(deployment_id: int) -> None:
    with _lock:
        _registry.pop(deployment_id, None)
        logger.debug(f"Unregistered deployment {deployment_id}")


def get_process(deployment_id: int) -> subprocess.Popen | None:
    with _lock:
        return _registry.get(deployment_id)


def signal_group(proc: subprocess.Popen, sig: int) -> None:
    # Children are started in their own session, so the pgid equals the pid
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except OSError:
        proc.send_signal(sig)


def terminate(deployment_id: int, wait_seconds: float = 3.0) -> bool:
    """Terminate the process group for deployment_id. Returns True if a process was found."""
    with _lock:
        proc = _registry.get(deployment_id)
    if proc is None:
        return False
    try:
        signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=wait_seconds)
        except subprocess.TimeoutExpired:
            signal_group(proc, signal.SIGKILL)
            proc.wait()
    except Exception as e:
        logger.warning(f"Error terminating deployment {deployment_id}: {e}")
    finally:
        unregister(deployment_id)
    return True
