"""
retry.py — Explicit Retry Policy for Idempotent Lookups

Only reads against third-party endpoints (the customer's wallet address) are
retried. Grant, quote and payment creation are never passed through a policy:
repeating them could create duplicate resources on the remote side.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from .exceptions import ProtocolError, RequestTimeoutError

log = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with linear backoff.

    Attributes:
        max_attempts (int): Total number of attempts (1 means no retry).
        backoff (float): Delay before the n-th retry is n * backoff seconds.
        retry_on (tuple): Exception types that trigger another attempt.
    """
    max_attempts: int = 3
    backoff: float = 0.5
    retry_on: Tuple[Type[BaseException], ...] = (ProtocolError, RequestTimeoutError)

    @classmethod
    def from_retries(cls, retries: int, backoff: float) -> "RetryPolicy":
        return cls(max_attempts=retries + 1, backoff=backoff)

    def call(self, fn: Callable[[], R], description: str = "call") -> R:
        """
        Runs `fn` until it succeeds or the attempts are used up.

        Raises:
            The last exception raised by `fn`.
        """
        def _log_retry(state):
            log.warning(
                f"{description}: Versuch {state.attempt_number}/{self.max_attempts} fehlgeschlagen "
                f"({state.outcome.exception()}). Neuer Versuch..."
            )

        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(fn)
