"""In-process bookkeeping for build workers.

Deployments of the same page run one at a time, admitted in the order they
were queued: each page has a FIFO queue of tickets and only the ticket at its
head may touch the page's working tree and service. Queues disappear once
empty. The module also tracks the phase of every live worker (queued or
running), cancel requests, and the worker threads so callers can wait on them.
"""
import threading
import logging
from collections import deque
from typing import Deque, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)

PHASE_PENDING = "pending"
PHASE_RUNNING = "running"

_lock = threading.Lock()
_phases: Dict[int, str] = {}
_pages: Dict[int, int] = {}
_threads: Dict[int, threading.Thread] = {}
_cancelled: set = set()

_queue_condition = threading.Condition()
_page_queues: Dict[int, Deque[Hashable]] = {}


def enqueue_page(page_id: int, ticket: Hashable) -> None:
    """Take a place in the page's queue; a ticket already queued keeps its place."""
    with _queue_condition:
        queue = _page_queues.setdefault(page_id, deque())
        if ticket not in queue:
            queue.append(ticket)


def acquire_page(page_id: int, ticket: Hashable, timeout: Optional[float] = None) -> bool:
    """Wait until ticket is at the head of the page's queue. Returns False on timeout; the ticket stays queued."""
    with _queue_condition:
        queue = _page_queues.setdefault(page_id, deque())
        if ticket not in queue:
            queue.append(ticket)
        _queue_condition.wait_for(lambda: ticket not in queue or queue[0] == ticket, timeout=timeout)
        return bool(queue) and queue[0] == ticket


def release_page(page_id: int, ticket: Hashable) -> None:
    """Leave the page's queue, whether holding the page or still waiting."""
    with _queue_condition:
        queue = _page_queues.get(page_id)
        if queue is None:
            return
        try:
            queue.remove(ticket)
        except ValueError:
            return
        if not queue:
            del _page_queues[page_id]
        _queue_condition.notify_all()


def page_queue(page_id: int) -> List[Hashable]:
    with _queue_condition:
        return list(_page_queues.get(page_id, ()))


def register(deployment_id: int, page_id: int, thread: threading.Thread) -> None:
    with _lock:
        _phases[deployment_id] = PHASE_PENDING
        _pages[deployment_id] = page_id
        _threads[deployment_id] = thread
    enqueue_page(page_id, deployment_id)


def mark_running(deployment_id: int) -> None:
    with _lock:
        if deployment_id in _phases:
            _phases[deployment_id] = PHASE_RUNNING


def unregister(deployment_id: int) -> None:
    with _lock:
        _phases.pop(deployment_id, None)
        page_id = _pages.pop(deployment_id, None)
        _threads.pop(deployment_id, None)
        _cancelled.discard(deployment_id)
    if page_id is not None:
        release_page(page_id, deployment_id)


def get_phase(deployment_id: int) -> Optional[str]:
    with _lock:
        return _phases.get(deployment_id)


def is_active(deployment_id: int) -> bool:
    with _lock:
        return deployment_id in _phases


def active_deployments(page_id: Optional[int] = None) -> List[int]:
    with _lock:
        return [d for d, p in _pages.items() if page_id is None or p == page_id]


def request_cancel(deployment_id: int) -> bool:
    """Flag a live worker for cancellation. Returns False if no such worker."""
    with _lock:
        if deployment_id not in _phases:
            return False
        _cancelled.add(deployment_id)
    logger.info(f"Cancellation requested for deployment {deployment_id}")
    return True


def is_cancel_requested(deployment_id: int) -> bool:
    with _lock:
        return deployment_id in _cancelled


def join(deployment_id: int, timeout: Optional[float] = None) -> bool:
    """Wait for a worker thread to finish. Returns True if it is no longer running."""
    with _lock:
        thread = _threads.get(deployment_id)
    if thread is None:
        return True
    thread.join(timeout)
    return not thread.is_alive()
