"""
Bounded exponential backoff for transient provider errors.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

from .errors import FatalProviderError, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Retry policy applied to every provider call made for a plan step.

    Only TransientProviderError is retried. Once ``max_attempts`` calls have
    failed the last error is escalated to FatalProviderError.
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 20.0
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(self, fn: Callable[..., Any], *args,
             on_retry: Optional[Callable[[int, TransientProviderError, float], None]] = None,
             **kwargs) -> Tuple[Any, int]:
        """
        Call ``fn`` until it succeeds, a fatal error occurs, or attempts run out.

        Args:
            fn: Callable to invoke
            on_retry: Called with (attempt, error, delay) before each backoff sleep

        Returns:
            Tuple of (result, attempts used)

        Raises:
            FatalProviderError: When retries are exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs), attempt
            except TransientProviderError as e:
                e.attempts = attempt
                if attempt >= self.max_attempts:
                    raise FatalProviderError(
                        f"Giving up after {attempt} attempts: {e}",
                        code=e.code, hint=e.hint, attempts=attempt,
                    ) from e

                delay = self.delay_for(attempt)
                logger.warning(f"Transient provider error (attempt {attempt}/{self.max_attempts}), "
                               f"retrying in {delay:.1f}s: {e}")
                if on_retry:
                    on_retry(attempt, e, delay)
                self.sleep(delay)
            except FatalProviderError as e:
                e.attempts = attempt
                raise
