"""Retry utilities with exponential backoff for server calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 5.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (TransportError,)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RetryConfig":
        retry_cfg = config.get("retry") or {}
        return cls(
            max_retries=max(0, int(retry_cfg.get("max_retries", cls.max_retries))),
            base_delay=float(retry_cfg.get("base_delay", cls.base_delay)),
            max_delay=float(retry_cfg.get("max_delay", cls.max_delay)),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.exponential_base**attempt), self.max_delay)


DEFAULT_RETRY_CONFIG = RetryConfig()


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call *func*, retrying retryable exceptions with exponential backoff.

    Args:
        func: Function to execute
        *args: Positional arguments for the function
        config: Retry configuration
        operation_name: Name of the operation for logging
        sleep: Sleep function (replaceable in tests)
        **kwargs: Keyword arguments for the function

    Returns:
        The result of the function.

    Raises:
        The last retryable exception once ``max_retries`` is exhausted, or
        any non-retryable exception immediately.
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_retries:
                logger.error(
                    f"{operation_name}: Failed after {config.max_retries + 1} attempts: {e}"
                )
                raise
            delay = config.delay_for(attempt)
            logger.warning(
                f"{operation_name}: {type(e).__name__}, "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{config.max_retries + 1})"
            )
            sleep(delay)
            attempt += 1
