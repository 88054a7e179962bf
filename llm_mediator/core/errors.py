"""
Error taxonomy for mediated LLM requests.

Provider adapters raise ProviderFailure; callers of the mediator only ever
see LLMRequestError subclasses.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed set of error kinds surfaced to callers."""
    BUDGET_EXCEEDED = "budget_exceeded"
    INVALID_API_KEY = "invalid_api_key"
    INVALID_REQUEST = "invalid_request"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_TIMEOUT = "network_timeout"
    UNCLASSIFIED = "unclassified"


class ProviderFailure(Exception):
    """Failure raised by a provider client adapter.

    Carries only what the classifier needs: an HTTP-like status, the raw
    Retry-After header value, and whether the transport timed out or reset.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[str] = None,
        timed_out: bool = False,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.timed_out = timed_out
        self.code = code


class LLMRequestError(Exception):
    """Base class for normalized errors."""
    kind: ErrorKind = ErrorKind.UNCLASSIFIED
    code: str = "REQUEST_FAILED"
    default_message: str = "LLM request failed"

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.status = status


class BudgetExceededError(LLMRequestError):
    kind = ErrorKind.BUDGET_EXCEEDED
    code = "BUDGET_EXCEEDED"
    default_message = "Monthly OpenAI budget exceeded"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, status=402)


class InvalidApiKeyError(LLMRequestError):
    kind = ErrorKind.INVALID_API_KEY
    code = "INVALID_API_KEY"
    default_message = "Invalid OpenAI API key"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, status=401)


class InvalidRequestError(LLMRequestError):
    kind = ErrorKind.INVALID_REQUEST
    code = "INVALID_REQUEST"
    default_message = "Invalid OpenAI request"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, status=400)


class RateLimitError(LLMRequestError):
    """Rate limited by the provider; retry_after_ms is the provider's hint."""
    kind = ErrorKind.RATE_LIMIT
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after_ms: Optional[int] = None):
        super().__init__(message, status=429)
        self.retry_after_ms = retry_after_ms


class ServerError(LLMRequestError):
    kind = ErrorKind.SERVER_ERROR
    code = "SERVER_ERROR"
    default_message = "OpenAI server error"

    def __init__(self, status: int = 500, message: Optional[str] = None):
        super().__init__(message, status=status)


class NetworkTimeoutError(LLMRequestError):
    kind = ErrorKind.NETWORK_TIMEOUT
    code = "NETWORK_TIMEOUT"
    default_message = "Network timeout while calling OpenAI"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message)


class UnclassifiedError(LLMRequestError):
    """Any failure that does not match a known kind."""
