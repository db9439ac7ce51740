"""
Resilience utilities for the enrichment service.

Provides:
- Error taxonomy shared by the gateway, reconciler and routes
- Rate-limit-aware retry with call spacing for LLM calls
- Generic retry logic for transient transport failures
- User-friendly error messages for API responses
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Attempts and backoff for transient transport failures (export downloads)."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry `retry_number` (1-based), capped at max_delay."""
        return min(self.base_delay * self.exponential_base ** (retry_number - 1), self.max_delay)


DEFAULT_RETRY_CONFIG = RetryConfig()


class ServiceUnavailableError(Exception):
    """An upstream dependency (tool service, LLM provider) could not serve the request."""

    def __init__(self, service: str, message: str, partial_result=None):
        self.service = service
        self.message = message
        self.partial_result = partial_result
        super().__init__(f"{service}: {message}")


class ToolTransportError(ServiceUnavailableError):
    """Network / connection failure talking to the tool service."""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        self.tool_name = tool_name
        super().__init__("tool service", message)


class EnrichmentValidationError(ValueError):
    """Request shape is missing or invalid; rejected without retry."""


class RequestTimeoutError(Exception):
    """An enrichment request exceeded its time budget."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request did not finish within {timeout:.0f}s")


class RetryableStatusError(Exception):
    """HTTP response with a transient status code (5xx, 429, 408)."""

    def __init__(self, status_code: int, url: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} from {url}")


def retry_async(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Retry an async callable on the configured exception types.

    The first call plus up to `max_retries` retries; the last failure is
    re-raised unchanged. `on_retry(retry_number, error)` runs before each wait.
    """
    policy = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            retry_number = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except policy.retryable_exceptions as error:
                    retry_number += 1
                    if retry_number > policy.max_retries:
                        logger.error(
                            f"{func.__name__} failed after {policy.max_retries} retries: {error}"
                        )
                        raise
                    wait = policy.delay_for(retry_number)
                    logger.warning(
                        f"{func.__name__} failed ({error}); retry {retry_number}/{policy.max_retries} in {wait:.1f}s"
                    )
                    if on_retry:
                        on_retry(retry_number, error)
                    await asyncio.sleep(wait)

        return wrapper
    return decorator


@dataclass
class RateLimitPolicy:
    """Retry and spacing policy for rate-limited upstream calls."""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    min_interval: float = 2.0  # seconds between consecutive calls


class RateLimitedCaller:
    """
    Wraps every call to a rate-limited upstream (the LLM provider).

    - Enforces a minimum spacing between consecutive calls, even when nothing
      has been throttled yet.
    - On a rate-limit error, waits the provider's retry hint when one is given,
      otherwise exponential backoff capped at `max_delay`, and retries up to
      `max_attempts` attempts in total. The last error is raised when attempts
      run out.
    - Any other error propagates immediately.
    """

    def __init__(
        self,
        is_rate_limit: Callable[[Exception], bool],
        retry_hint: Callable[[Exception], Optional[float]],
        policy: Optional[RateLimitPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or RateLimitPolicy()
        self._is_rate_limit = is_rate_limit
        self._retry_hint = retry_hint
        self._sleep = sleep
        self._clock = clock
        self._last_call_at: Optional[float] = None

    def backoff_delay(self, attempt: int, error: Exception) -> float:
        """Seconds to wait after a rate-limited attempt (0-based)."""
        hint = self._retry_hint(error)
        if hint is not None and hint > 0:
            return hint
        return min(self.policy.base_delay * (2 ** attempt), self.policy.max_delay)

    async def _respect_spacing(self) -> None:
        # Claim the next free slot before sleeping so concurrent callers queue up
        now = self._clock()
        slot = now if self._last_call_at is None else max(now, self._last_call_at + self.policy.min_interval)
        self._last_call_at = slot
        wait = slot - now
        if wait > 0:
            logger.info(f"Rate limiting: waiting {wait:.1f}s before next API call...")
            await self._sleep(wait)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        last_error: Optional[Exception] = None

        for attempt in range(self.policy.max_attempts):
            await self._respect_spacing()
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self._is_rate_limit(e):
                    raise
                last_error = e
                if attempt + 1 >= self.policy.max_attempts:
                    break
                delay = self.backoff_delay(attempt, e)
                logger.warning(
                    f"Rate limited. Waiting {delay:.1f}s before retry "
                    f"{attempt + 1}/{self.policy.max_attempts - 1}..."
                )
                await self._sleep(delay)

        logger.error(f"Rate limit retries exhausted after {self.policy.max_attempts} attempts")
        raise last_error


# Status codes worth retrying: throttling, request timeout, transient server errors
_RETRYABLE_STATUSES = frozenset({408, 429})


def _status_of(error: Exception) -> Optional[int]:
    for attr in ("status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def user_friendly_error(error: Exception) -> str:
    """
    Render an exception as the `details` text of an error response.

    Known exception types map to fixed messages; SDK errors are classified by
    their HTTP status when they carry one, otherwise by their text.
    """
    if isinstance(error, ServiceUnavailableError):
        return f"{error.service} is currently unavailable. {error.message}"

    if isinstance(error, EnrichmentValidationError):
        return str(error)

    if isinstance(error, RequestTimeoutError):
        return f"The request took longer than {error.timeout:.0f} seconds and was stopped."

    status = _status_of(error)
    text = str(error).lower()

    if status == 429 or "rate limit" in text or "429" in text or "quota" in text:
        return "Too many requests to the model provider. Please wait a moment and try again."

    if status in (401, 403) or "unauthorized" in text or "401" in text or "403" in text:
        return "The model provider rejected the credentials. Check the configured API key."

    if (status is not None and status >= 500) or any(code in text for code in ("500", "502", "503", "529")):
        return "The model provider is temporarily unavailable. Please try again later."

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)) or "timed out" in text or "timeout" in text:
        return "The request timed out. Please try again."

    if isinstance(error, ConnectionError) or "connection" in text:
        return "Could not reach an upstream service. Please try again."

    return f"An error occurred: {type(error).__name__}. Please try again."


def is_retryable_status(status_code: int) -> bool:
    """True for statuses that signal a transient failure (5xx except 501, 429, 408)."""
    if status_code in _RETRYABLE_STATUSES:
        return True
    return status_code >= 500 and status_code != 501
