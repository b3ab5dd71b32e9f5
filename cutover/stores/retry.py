"""Bounded retry with exponential backoff for transient store failures."""

import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Tuple, Type, TypeVar

from ..errors import RetryExhaustedError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How many times, and how patiently, to retry a transient failure."""
    max_retries: int = 3
    delay: float = 0.1
    backoff_factor: float = 2.0
    exceptions: Tuple[Type[BaseException], ...] = (TransientStoreError,)

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Invoke func, retrying on the policy's exceptions."""
        current_delay = self.delay

        for attempt in range(self.max_retries + 1):
            try:
                return func(*args, **kwargs)
            except RetryExhaustedError:
                raise
            except self.exceptions as e:
                if attempt == self.max_retries:
                    logger.error(f"{getattr(func, '__name__', 'call')} failed after {attempt + 1} attempts: {e}")
                    raise RetryExhaustedError(
                        f"Operation failed after {attempt + 1} attempts: {e}",
                        attempts=attempt + 1,
                        original_error=e,
                    ) from e

                logger.warning(
                    f"{getattr(func, '__name__', 'call')} attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {current_delay:.2f}s"
                )
                if current_delay > 0:
                    time.sleep(current_delay)
                current_delay *= self.backoff_factor

        raise AssertionError("unreachable")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=data.get("max_retries", 3),
            delay=data.get("delay", 0.1),
            backoff_factor=data.get("backoff_factor", 2.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "delay": self.delay,
            "backoff_factor": self.backoff_factor,
        }


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 0.1,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (TransientStoreError,),
):
    """
    Decorator retrying a function on transient failures.

    Args:
        max_retries: Maximum number of retry attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Multiplier for exponential backoff
        exceptions: Tuple of exception types to retry on

    Returns:
        Decorated function raising RetryExhaustedError once attempts run out
    """
    policy = RetryPolicy(max_retries, delay, backoff_factor, exceptions)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return policy.call(func, *args, **kwargs)
        return wrapper

    return decorator


def retried(method: Callable[..., T]) -> Callable[..., T]:
    """Method decorator using the instance's `retry_policy`."""

    @wraps(method)
    def wrapper(self, *args, **kwargs) -> T:
        return self.retry_policy.call(method, self, *args, **kwargs)

    return wrapper
