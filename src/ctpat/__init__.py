"""CTPAT Relay - inspection submission and report delivery service.

Accepts CTPAT truck/trailer inspection submissions exactly once, moves them
through the draft/submitted/archived lifecycle, and delivers inspection
report emails through a durable retrying queue.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
