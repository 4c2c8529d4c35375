"""Shared helpers."""

from .retry import RetryManager, RetryPolicy, compute_backoff, is_transient_error

__all__ = ["RetryManager", "RetryPolicy", "compute_backoff", "is_transient_error"]
