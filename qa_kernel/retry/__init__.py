"""Retry decision engine."""

from qa_kernel.retry.engine import (
    RetryDecisionEngine,
    build_retry_delta,
    calculate_retry_delay,
)

__all__ = ["RetryDecisionEngine", "build_retry_delta", "calculate_retry_delay"]
