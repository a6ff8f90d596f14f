"""CTPAT Relay API middleware components.

This module provides middleware for:
- Request ID tracking for log correlation
- Consistent error response formatting
"""

from ctpat.api.middleware.errors import ErrorHandlerMiddleware, build_error_response
from ctpat.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
    "build_error_response",
    "get_request_id",
]
