"""CTPAT Relay API routers.

- records: inspection submission, lifecycle, deletion and notify requests
- queue: delivery queue operations (stats, jobs, dispatch, retry)
"""

from ctpat.api.routers.queue import router as queue_router
from ctpat.api.routers.records import router as records_router

__all__ = [
    "queue_router",
    "records_router",
]
