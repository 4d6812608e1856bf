from __future__ import annotations

import random
from dataclasses import dataclass

from fluxbatch.core.models import RetryConfig

"""
Exponential backoff ladders for local retries.

Generic failures retry on a short ladder (1s, 2s, 4s, ...) while rate-limit
rejections retry on a long one (15s, 30s, 60s) so externally imposed
cooldowns have time to pass. Both add random jitter to avoid synchronized
retries.
"""


@dataclass
class Backoff:
    """
    Exponential backoff calculator with jitter.

    Computes retry delays that:
    - Grow exponentially with each attempt (2^attempt)
    - Are capped at a maximum delay
    - Include random jitter to prevent synchronized retries

    Attributes:
        base_delay_seconds (float): Delay before the first retry
        max_delay_seconds (float): Maximum delay (caps exponential growth)
        jitter (float): Random variation factor (0.0-1.0)
    """

    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter: float = 0.1

    def compute_delay(self, attempt_index: int) -> float:
        """
        Calculate backoff delay for the given attempt.

        Delay = min(max_delay, base_delay * 2^attempt_index) + jitter

        Args:
            attempt_index (int): Zero-based retry number

        Returns:
            float: Delay in seconds (always >= 0)
        """
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2**attempt_index))
        noise = delay * self.jitter * (2 * random.random() - 1)
        result: float = max(0.0, delay + noise)
        return result


def build_backoffs(retry: RetryConfig) -> tuple[Backoff, Backoff]:
    """
    Build the (generic, rate_limit) backoff ladders described by a retry config.

    Args:
        retry (RetryConfig): Retry configuration

    Returns:
        tuple[Backoff, Backoff]: Short ladder for generic failures, long ladder for rate limits
    """
    generic = Backoff(
        base_delay_seconds=retry.base_delay_seconds,
        max_delay_seconds=retry.max_delay_seconds,
        jitter=retry.jitter,
    )
    rate_limit = Backoff(
        base_delay_seconds=retry.rate_limit_base_delay_seconds,
        max_delay_seconds=retry.rate_limit_max_delay_seconds,
        jitter=retry.jitter,
    )
    return generic, rate_limit
