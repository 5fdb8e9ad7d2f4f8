"""
Retry with exponential backoff and jitter.

Only failures whose translated error is retryable are retried; storage and
permission errors always end the loop on the first attempt.
"""
import random
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from qrshare.common.errors import QRShareError, translate_exception

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryPolicy:
    """Configurable retry policy with exponential backoff"""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        use_jitter: bool = True
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.use_jitter = use_jitter

    def get_delay(self, attempt: int) -> float:
        """Get delay for given retry attempt (0-indexed)"""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        if self.use_jitter:
            delay *= 1 + random.random() * 0.1  # up to 10%
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Check if we should retry given the number of attempts made so far"""
        return attempt < self.max_retries

    def __repr__(self) -> str:
        return (f"RetryPolicy(max_retries={self.max_retries}, initial_delay={self.initial_delay}, "
                f"max_delay={self.max_delay}, backoff_multiplier={self.backoff_multiplier})")


# Presets per operation type
NETWORK = RetryPolicy(max_retries=3, initial_delay=2.0, max_delay=15.0, backoff_multiplier=2.0)
FILE_SYSTEM = RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=5.0, backoff_multiplier=1.5,
                          use_jitter=False)
QR_CODE = RetryPolicy(max_retries=5, initial_delay=0.5, max_delay=3.0, backoff_multiplier=1.5)
SERVER = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    should_retry: Optional[Callable[[QRShareError], bool]] = None,
    on_retry: Optional[Callable[[int, QRShareError], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation until it succeeds, fails with a non-retryable error, or
    the policy's attempts run out.

    Args:
        operation: zero-argument coroutine factory, called once per attempt
        policy: backoff settings (default RetryPolicy())
        should_retry: override for the error's own retryable flag
        on_retry: called with (attempt number, error) before each wait
        sleep: awaitable used to wait between attempts

    Raises:
        QRShareError: the last failure, translated
    """
    policy = policy or RetryPolicy()
    attempts = 0

    while True:
        attempts += 1
        try:
            return await operation()
        except Exception as e:
            error = translate_exception(e)
            can_retry = should_retry(error) if should_retry else error.retryable

            if not can_retry or not policy.should_retry(attempts):
                if error is e:
                    raise
                raise error from e

            if on_retry:
                on_retry(attempts, error)

            delay = policy.get_delay(attempts - 1)
            logger.warning(f"Attempt {attempts}/{policy.max_retries} failed ({error.code}): "
                           f"{error.message}; retrying in {delay:.1f}s")
            await sleep(delay)
