"""
Retry utilities for handling transient failures
"""
import random
import time
from typing import Callable, Any, Optional, List
import logging

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or [Exception])

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

def retry_call(func: Callable, config: RetryConfig, *args, sleep: Callable[[float], None] = time.sleep, **kwargs) -> Any:
    """Call func, retrying retryable exceptions with exponential backoff.

    The last exception is re-raised once attempts are exhausted; non-retryable
    exceptions propagate immediately.
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {name}")
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {name}: {e}. Retrying in {delay:.2f}s")
            sleep(delay)
