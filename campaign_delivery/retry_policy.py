# filename: retry_policy.py

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def exponential_backoff(attempt: int) -> float:
    """Seconds to wait after the given failed attempt (1-based): 2, 4, 8..."""
    return float(2 ** attempt)


@dataclass
class RetryOutcome:
    success: bool
    attempts: int
    result: Any = None
    last_error: Optional[BaseException] = None

    @property
    def failed_attempts(self) -> int:
        return self.attempts - 1 if self.success else self.attempts

    @property
    def error_message(self) -> Optional[str]:
        if self.last_error is None:
            return None
        return str(self.last_error) or self.last_error.__class__.__name__


class RetryPolicy:
    """
    Calls a function until it succeeds or max_attempts is reached,
    sleeping backoff(attempt) seconds between attempts.
    The sleep function is injectable so tests can run without real delays.
    """

    def __init__(self, max_attempts: int = 3,
                 backoff: Callable[[int], float] = exponential_backoff,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep

    def run(self, func: Callable[[], Any], description: str = "operation") -> RetryOutcome:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func()
                return RetryOutcome(success=True, attempts=attempt, result=result)
            except Exception as e:
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt}/{self.max_attempts}): {str(e)}")
                if attempt < self.max_attempts:
                    self.sleep(self.backoff(attempt))
        return RetryOutcome(success=False, attempts=self.max_attempts, last_error=last_error)
