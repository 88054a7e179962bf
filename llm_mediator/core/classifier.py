"""
Failure classification.

Decides whether a failed attempt should be retried and maps the final
failure into the normalized error taxonomy.

Classification order:
1. 429 - retry, honoring Retry-After
2. >= 500 - retry
3. Transport timeout or reset - retry
4. 401 - invalid API key, no retry
5. 400 - invalid request, no retry
6. Anything else - no retry
"""

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional

from .errors import (
    InvalidApiKeyError,
    InvalidRequestError,
    LLMRequestError,
    NetworkTimeoutError,
    ProviderFailure,
    RateLimitError,
    ServerError,
    UnclassifiedError,
)


class RetryReason(Enum):
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_TIMEOUT = "network_timeout"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying one failed attempt."""
    should_retry: bool
    reason: RetryReason
    retry_after_ms: Optional[int] = None


_TRANSPORT_ERRORS = (TimeoutError, asyncio.TimeoutError, ConnectionResetError)


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[int]:
    """Convert a Retry-After header value to a delay in milliseconds.

    Args:
        value: Header value, either seconds or an HTTP date
        now: Current time in epoch seconds (defaults to time.time())

    Returns:
        Delay in ms floored at 0, or None if the value cannot be parsed
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            return None
        return max(0, int(seconds * 1000))

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        # "-0000" means UTC with no offset information
        when = when.replace(tzinfo=timezone.utc)
    current = time.time() if now is None else now
    return max(0, int((when.timestamp() - current) * 1000))


def _status_of(failure: BaseException) -> Optional[int]:
    if isinstance(failure, ProviderFailure):
        return failure.status
    return None


def _is_transport_timeout(failure: BaseException) -> bool:
    if isinstance(failure, ProviderFailure):
        return failure.timed_out
    return isinstance(failure, _TRANSPORT_ERRORS)


def _retry_after_of(failure: BaseException, now: Optional[float]) -> Optional[int]:
    if isinstance(failure, ProviderFailure):
        return parse_retry_after(failure.retry_after, now)
    return None


def classify(failure: BaseException, now: Optional[float] = None) -> RetryDecision:
    """Decide whether a failed attempt should be retried."""
    status = _status_of(failure)

    if status == 429:
        return RetryDecision(True, RetryReason.RATE_LIMIT, _retry_after_of(failure, now))
    if status is not None and status >= 500:
        return RetryDecision(True, RetryReason.SERVER_ERROR, _retry_after_of(failure, now))
    if _is_transport_timeout(failure):
        return RetryDecision(True, RetryReason.NETWORK_TIMEOUT)
    return RetryDecision(False, RetryReason.NON_RETRYABLE)


def normalize(failure: BaseException, now: Optional[float] = None) -> LLMRequestError:
    """Map a failure onto the closed error taxonomy.

    Already-normalized errors are returned unchanged.
    """
    if isinstance(failure, LLMRequestError):
        return failure

    status = _status_of(failure)
    message = str(failure) or "OpenAI request failed"

    if status == 401:
        return InvalidApiKeyError()
    if status == 400:
        return InvalidRequestError(message)
    if status == 429:
        return RateLimitError(message, _retry_after_of(failure, now))
    if status is not None and status >= 500:
        return ServerError(status, message)
    if _is_transport_timeout(failure):
        return NetworkTimeoutError()
    return UnclassifiedError(message, status=status)
