"""
Backoff calculation for resilient refresh attempts.
"""

import random
from typing import Callable, Optional


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 10.0,
                 exponential_base: float = 2.0,
                 jitter_factor: float = 0.1):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= jitter_factor < 1.0:
            raise ValueError("jitter_factor must be in [0, 1)")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_factor = jitter_factor

    @classmethod
    def from_config(cls, config) -> "RetryConfig":
        """Build from a SessionConfig."""
        return cls(
            max_attempts=config.refresh_max_attempts,
            base_delay=config.refresh_base_delay,
            max_delay=config.refresh_max_delay,
            jitter_factor=config.refresh_jitter_factor,
        )


def calculate_delay(attempt: int,
                    config: RetryConfig,
                    uniform: Optional[Callable[[float, float], float]] = None) -> float:
    """Delay in seconds before retrying after the given (1-based) attempt.

    ``min(max_delay, base_delay * base**(attempt-1)) * (1 ± jitter_factor)``,
    jitter drawn uniformly so concurrent clients drift apart.
    """
    uniform = uniform or random.uniform
    attempt = max(1, attempt)

    delay = config.base_delay * (config.exponential_base ** (attempt - 1))

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    if config.jitter_factor:
        delay *= 1.0 + uniform(-config.jitter_factor, config.jitter_factor)

    return max(0.0, delay)
