"""
Background persistence worker for simulation and reward records.

Runs in a dedicated thread per gunicorn worker process. Request handlers
drop records on an in-memory queue and return immediately; this thread
drains the queue and writes each record to SQLite.  A write failure is
logged (and reported to Sentry when configured) and never reaches the
request that produced the record.
"""

import os
import logging
import queue
import threading
from typing import Any, Dict, Optional, Tuple

from models import init_db, insert_simulation, insert_reward

logger = logging.getLogger(__name__)

# Wait interval when the queue is empty (seconds)
POLL_INTERVAL = 1.0

# Records beyond this are dropped with an error log rather than blocking
MAX_QUEUE_SIZE = 1000

KIND_SIMULATION = "simulation"
KIND_REWARD = "reward"

_WRITERS = {
    KIND_SIMULATION: insert_simulation,
    KIND_REWARD: insert_reward,
}

_queue: "queue.Queue[Tuple[str, Dict[str, Any]]]" = queue.Queue(maxsize=MAX_QUEUE_SIZE)

# Stop event: set by the main process to signal the worker thread to exit
_stop_event = threading.Event()
_worker_thread = None


def _enqueue(kind: str, record: Dict[str, Any]) -> bool:
    try:
        _queue.put_nowait((kind, record))
        return True
    except queue.Full:
        logger.error(
            "[worker] Persistence queue full (%d); dropping %s record for user %s",
            MAX_QUEUE_SIZE, kind, record.get("user_id"),
        )
        return False


def enqueue_simulation(record: Dict[str, Any]) -> bool:
    """Hand a simulation record to the writer. Never blocks."""
    return _enqueue(KIND_SIMULATION, record)


def enqueue_reward(record: Dict[str, Any]) -> bool:
    """Hand a reward record to the writer. Never blocks."""
    return _enqueue(KIND_REWARD, record)


def pending() -> int:
    return _queue.qsize()


def _capture(e: Exception, kind: str) -> None:
    if not os.environ.get("SENTRY_DSN"):
        return
    try:
        import sentry_sdk
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("record_kind", kind)
            sentry_sdk.capture_exception(e)
    except Exception:
        logger.debug("[worker] Sentry capture failed", exc_info=True)


def _process(kind: str, record: Dict[str, Any]) -> Optional[str]:
    """Write one record. Returns the row id, or None when the write failed."""
    writer = _WRITERS.get(kind)
    if writer is None:
        logger.error("[worker] Unknown record kind %r; dropping", kind)
        return None
    try:
        row_id = writer(record)
        logger.info("[worker] Persisted %s %s for user %s", kind, row_id, record.get("user_id"))
        return row_id
    except Exception as e:
        logger.exception("[worker] Failed to persist %s record", kind)
        _capture(e, kind)
        return None


def drain_once() -> int:
    """Write every record currently queued. Returns how many were taken.

    Synchronous; used by the worker loop and by tests.
    """
    taken = 0
    while True:
        try:
            kind, record = _queue.get_nowait()
        except queue.Empty:
            return taken
        try:
            _process(kind, record)
        finally:
            _queue.task_done()
        taken += 1


def _worker_loop() -> None:
    """Loop: wait for a record, write it, repeat until stop event is set."""
    logger.info("[worker] Persistence worker thread started")
    while not _stop_event.is_set():
        try:
            kind, record = _queue.get(timeout=POLL_INTERVAL)
        except queue.Empty:
            continue
        try:
            _process(kind, record)
        finally:
            _queue.task_done()
    # Flush whatever arrived before shutdown
    drain_once()
    logger.info("[worker] Persistence worker thread stopped")


def start_worker() -> None:
    """
    Start the background worker thread. Safe to call from the main process
    or from a gunicorn post_fork hook. Only one thread is started per process.
    """
    global _worker_thread
    if _worker_thread is not None and _worker_thread.is_alive():
        return
    # Ensure DB tables exist in this process before worker thread starts.
    init_db()
    _stop_event.clear()
    _worker_thread = threading.Thread(target=_worker_loop, daemon=True)
    _worker_thread.start()


def stop_worker(timeout: Optional[float] = None) -> None:
    """Signal the worker thread to stop (for tests or graceful shutdown)."""
    _stop_event.set()
    if timeout is not None and _worker_thread is not None:
        _worker_thread.join(timeout=timeout)
