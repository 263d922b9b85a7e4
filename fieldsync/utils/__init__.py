"""Shared utilities for configuration, logging, and retries"""

from fieldsync.utils.retry import backoff_delay, exponential_backoff_retry

__all__ = ["backoff_delay", "exponential_backoff_retry"]
