"""Retry Policy Engine

Generic backoff executor used by every stage that touches the filesystem,
the package library or the network. Policies are plain Pydantic models, so
they can be tuned from configuration and inspected in tests.

Key features:
  - Fixed, linear, exponential and exponential-with-jitter backoff
  - Per-policy retry predicate (non-retryable errors raise immediately)
  - Delays capped at ``max_delay`` and cancellable through a token
  - ``RetryExhaustedError`` carrying the last underlying error
"""

from enum import Enum
from typing import Callable, Optional, TypeVar
import errno
import logging
import random

import requests
from pydantic import BaseModel

from .cancellation import CancellationToken, NEVER_CANCELLED
from .errors import (
    IntegrityError,
    OperationCancelledError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_WITH_JITTER = "exponential_with_jitter"


class RetryPolicy(BaseModel):
    name: str
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    multiplier: float = 2.0
    jitter: float = 0.0
    should_retry: Optional[Callable[[BaseException], bool]] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (IntegrityError, OperationCancelledError)):
            return False
        if self.should_retry is None:
            return True
        return self.should_retry(error)


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (0-based).

    Only EXPONENTIAL_WITH_JITTER adds jitter, as a symmetric +/- percentage
    of the raw delay. The result is always capped at ``max_delay``.
    """
    if policy.backoff == BackoffStrategy.FIXED:
        delay = policy.base_delay
    elif policy.backoff == BackoffStrategy.LINEAR:
        delay = policy.base_delay * (attempt + 1)
    else:
        delay = policy.base_delay * (policy.multiplier ** attempt)

    if policy.backoff == BackoffStrategy.EXPONENTIAL_WITH_JITTER and policy.jitter > 0:
        rng = rng or random
        delay += delay * policy.jitter * (2 * rng.random() - 1)

    return max(0.0, min(delay, policy.max_delay))


def execute(
    operation: Callable[[], T],
    policy: RetryPolicy,
    token: Optional[CancellationToken] = None,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` under ``policy``.

    Raises:
        OperationCancelledError: If the token is cancelled before or between attempts
        RetryExhaustedError: After the last retryable failure
        Exception: Any non-retryable error, unchanged
    """
    token = token or NEVER_CANCELLED
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        token.raise_if_cancelled()
        try:
            return operation()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            last_error = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = compute_delay(policy, attempt)
            logger.warning(
                "%s failed (policy=%s, attempt %d/%d): %s. Retrying in %.2fs",
                description,
                policy.name,
                attempt + 1,
                policy.max_attempts,
                e,
                delay,
            )
            if token.wait(delay):
                raise OperationCancelledError(
                    f"{description} cancelled during retry back-off"
                ) from e

    logger.error(
        "%s failed after %d attempts (policy=%s)",
        description,
        policy.max_attempts,
        policy.name,
    )
    raise RetryExhaustedError(
        f"{description} failed after {policy.max_attempts} attempts: {last_error}",
        last_error,
    )


# ---------------------------------------------------------------------------
# Retry predicates
# ---------------------------------------------------------------------------

_LOCKED_MESSAGES = (
    "being used by another process",
    "sharing violation",
    "resource temporarily unavailable",
)


def is_transient_file_error(error: BaseException) -> bool:
    if isinstance(error, (FileNotFoundError, NotADirectoryError, IsADirectoryError)):
        return False
    if isinstance(error, (PermissionError, BlockingIOError, TimeoutError)):
        return True
    if isinstance(error, OSError) and error.errno in (errno.EBUSY, errno.EAGAIN, errno.EACCES):
        return True
    message = str(error).lower()
    return any(m in message for m in _LOCKED_MESSAGES)


def is_transient_http_error(error: BaseException) -> bool:
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(error, requests.HTTPError) and error.response is not None:
        code = error.response.status_code
        return code == 429 or code >= 500
    return False


def is_transient_package_error(error: BaseException) -> bool:
    # Corrupt packages and schema failures are never retried; only I/O hiccups
    # while the package library reads or writes the zip.
    if isinstance(error, (KeyError, ValueError)):
        return False
    return is_transient_file_error(error)


HTTP_POLICY = RetryPolicy(
    name="http",
    max_retries=3,
    base_delay=0.5,
    max_delay=30.0,
    backoff=BackoffStrategy.EXPONENTIAL_WITH_JITTER,
    multiplier=2.0,
    jitter=0.2,
    should_retry=is_transient_http_error,
)

FILE_POLICY = RetryPolicy(
    name="file",
    max_retries=5,
    base_delay=0.1,
    max_delay=5.0,
    backoff=BackoffStrategy.EXPONENTIAL,
    multiplier=1.5,
    jitter=0.1,
    should_retry=is_transient_file_error,
)

OPENXML_POLICY = RetryPolicy(
    name="openxml",
    max_retries=3,
    base_delay=0.2,
    max_delay=2.0,
    backoff=BackoffStrategy.LINEAR,
    multiplier=1.0,
    jitter=0.05,
    should_retry=is_transient_package_error,
)

POLICIES = {
    HTTP_POLICY.name: HTTP_POLICY,
    FILE_POLICY.name: FILE_POLICY,
    OPENXML_POLICY.name: OPENXML_POLICY,
}


def get_policy(name: str) -> RetryPolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown retry policy: {name}") from None
