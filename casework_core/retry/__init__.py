"""
Retry Logic with Exponential Backoff
=====================================
Bounded retry for transient audit storage failures.
"""

from .exceptions import RetryExhausted
from .backoff import compute_backoff_delay, retry_with_backoff

__all__ = [
    # Exceptions
    "RetryExhausted",
    # Backoff
    "compute_backoff_delay",
    "retry_with_backoff",
]
