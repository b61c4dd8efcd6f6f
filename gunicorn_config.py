"""
Gunicorn config. Ensures the persistence worker thread and the health
monitor are started in each worker process (post_fork). With --workers 2,
two processes each run one writer thread draining their own in-memory
queue into the shared SQLite file.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
# Block-data can wait up to 3 provider timeouts; leave headroom.
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "60"))


def post_fork(server, worker):
    """Start the persistence worker and health monitor in this gunicorn worker process."""
    logger = logging.getLogger(__name__)
    try:
        from worker import start_worker
        start_worker()
    except Exception as e:
        logger.exception("Failed to start persistence worker: %s", e)
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception as e:
        logger.exception("Failed to start health monitor: %s", e)


def worker_exit(server, worker):
    """Flush queued records before the process goes away."""
    try:
        from worker import stop_worker
        stop_worker(timeout=5)
    except Exception:
        logging.getLogger(__name__).exception("Failed to stop persistence worker")
