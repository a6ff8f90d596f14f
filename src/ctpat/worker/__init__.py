"""CTPAT Relay worker service.

Long-running dispatch loop for report emails:
- Delivers queued jobs through the configured mail channel with retries
- Returns jobs abandoned by crashed workers to the queue
- Purges old sent jobs

Usage:
    # Run as module
    python -m ctpat.worker

    # Or through the console script
    ctpat-worker
"""

from ctpat.worker.main import DispatchWorker, WorkerConfig, run

__all__ = ["DispatchWorker", "WorkerConfig", "run"]
