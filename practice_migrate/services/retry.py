"""Retry policy shared by the legacy reader, the loader and enrichment clients."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from ..models.migration import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff.

    An exception is retried when it carries ``retryable = True`` (see
    :mod:`practice_migrate.errors`) or is an instance of one of
    ``retry_on``. Anything else propagates immediately.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = ()
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides: Any) -> "RetryPolicy":
        """Create a policy from the ``retry`` section of the migration config."""
        values = {
            "max_attempts": config.max_attempts,
            "base_delay": config.base_delay,
            "backoff_factor": config.backoff_factor,
            "max_delay": config.max_delay,
        }
        values.update(overrides)
        return cls(**values)

    def is_retryable(self, exc: BaseException) -> bool:
        if getattr(exc, "retryable", False):
            return True
        return bool(self.retry_on) and isinstance(exc, self.retry_on)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def call(self, func: Callable[..., T], *args: Any, description: Optional[str] = None, **kwargs: Any) -> T:
        """
        Call ``func`` until it succeeds or the attempts are exhausted.

        Args:
            func: Callable to invoke
            description: Label used in log messages
            *args, **kwargs: Passed through to ``func``

        Returns:
            Whatever ``func`` returns

        Raises:
            The last exception raised by ``func`` once it is no longer retried
        """
        label = description or getattr(func, "__name__", "operation")
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{label} failed (attempt {attempt}/{self.max_attempts}): {e}; retrying in {delay:.1f}s"
                )
                self.sleep(delay)
                attempt += 1
