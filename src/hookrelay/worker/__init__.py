"""hookrelay worker service.

Drains the durable (database) job queue and runs the webhook event
handlers. Not needed with the in-memory backend, which runs handlers
inline.

Usage:
    # Console script
    hookrelay-worker

    # Or as a module
    python -m hookrelay.worker
"""

from hookrelay.worker.main import Worker, WorkerConfig, build_worker, run

__all__ = ["Worker", "WorkerConfig", "build_worker", "run"]
