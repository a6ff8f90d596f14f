"""Allow running the worker with ``python -m ctpat.worker``."""

from ctpat.worker.main import run

run()
