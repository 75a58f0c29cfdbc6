import logging
import random

from errors import DispatchError, FatalActionError
from models.workflow import BackoffStrategy, RetryPolicy

logger = logging.getLogger("automation_service")

# Upper bound for exponential growth; never below the policy's own delay.
MAX_BACKOFF_SECONDS = 3600


class RetryManager:
    """
    Retry bookkeeping for action attempts: transient/fatal classification
    and backoff windows. Attempt state itself lives on the execution row.
    """

    @staticmethod
    def classify(exception: Exception) -> Exception:
        """
        Maps a handler exception onto DispatchError or FatalActionError.
        Only FatalActionError is permanent: anything else a handler raises,
        including errors nobody anticipated, is retried within max_retries.
        """
        if isinstance(exception, (DispatchError, FatalActionError)):
            return exception
        return DispatchError(f"{type(exception).__name__}: {exception}")

    @staticmethod
    def exhausted(policy: RetryPolicy, attempt_count: int) -> bool:
        """True once the failed attempts of the current action exceed max_retries."""
        return attempt_count > policy.max_retries

    @staticmethod
    def backoff_seconds(policy: RetryPolicy, attempt_count: int, jitter: bool = False) -> float:
        """
        Wait before the next attempt after `attempt_count` failures.
        Fixed: retry_delay_seconds every time. Exponential: base * 2^(n-1),
        capped. Jitter only ever lengthens the wait.
        """
        base = float(policy.retry_delay_seconds)
        if policy.backoff == BackoffStrategy.EXPONENTIAL:
            delay = min(base * (2 ** max(attempt_count - 1, 0)), max(base, MAX_BACKOFF_SECONDS))
        else:
            delay = base

        if jitter:
            delay += random.uniform(0, 0.1 * delay)
        return delay
