"""Retrying HTTP request execution.

Every outbound request goes through :class:`RetryableRequest`, which
re-sends a request with exponential backoff while the :class:`RetryPolicy`
classifies the failure as transient.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from .exceptions import WchConfigError, WchNetworkError

logger = logging.getLogger(__name__)

DEFAULT_RETRIABLE_STATUS_CODES: frozenset = frozenset({429, 500, 502, 503, 504})

# Authorization failures reported in the body of a 403 that never go away on retry
NON_RETRIABLE_BODY_ERROR_CODES: frozenset = frozenset({1004, 1005, 1006, 3193})

# Transport failures treated as transient when network retries are enabled
TRANSIENT_TRANSPORT_ERRORS = (
    httpx.ConnectError,
    httpx.TimeoutException,
    httpx.ReadError,
    httpx.RemoteProtocolError,
)


def parse_error_codes(body: Any) -> list[int]:
    """Extract application error codes from a remote error body.

    The service reports errors as ``{"errors": [{"code": 2504, ...}]}``.
    Anything that does not match that shape yields no codes.

    Args:
        body: Decoded JSON body, raw text or bytes

    Returns:
        List of integer error codes (possibly empty)
    """
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return []
    if not isinstance(body, dict):
        return []
    errors = body.get("errors")
    if isinstance(errors, dict):
        errors = [errors]
    if not isinstance(errors, list):
        return []
    codes = []
    for error in errors:
        if not isinstance(error, dict):
            continue
        code = error.get("code")
        if isinstance(code, bool):
            continue
        if isinstance(code, int):
            codes.append(code)
        elif isinstance(code, str) and code.strip().isdigit():
            codes.append(int(code))
    return codes


@dataclass
class RetryPolicy:
    """Retry configuration for remote requests.

    A request is retried only while the attempt count is below
    ``max_attempts`` and the observed failure is retriable.
    """

    max_attempts: int = 3
    min_timeout: float = 1.0
    max_timeout: float = 10.0
    factor: float = 2.0
    randomize: bool = False
    retriable_status_codes: frozenset = DEFAULT_RETRIABLE_STATUS_CODES
    retriable_body_error_codes: frozenset = field(default_factory=frozenset)
    retry_network_errors: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise WchConfigError(
                f"retry max attempts must be at least 1, got {self.max_attempts}"
            )
        self.retriable_status_codes = frozenset(self.retriable_status_codes)
        self.retriable_body_error_codes = frozenset(self.retriable_body_error_codes)

    @classmethod
    def from_options(cls, get_option: Callable[[str], Any]) -> "RetryPolicy":
        """Build a policy from resolved options.

        Args:
            get_option: Function returning the resolved value of an option

        Returns:
            RetryPolicy for the current call
        """
        extra_codes = get_option("retry_status_codes") or []
        return cls(
            max_attempts=int(get_option("retry_max_attempts")),
            min_timeout=float(get_option("retry_min_timeout")),
            max_timeout=float(get_option("retry_max_timeout")),
            factor=float(get_option("retry_factor")),
            randomize=bool(get_option("retry_randomize")),
            retriable_status_codes=DEFAULT_RETRIABLE_STATUS_CODES
            | frozenset(int(code) for code in extra_codes),
            retriable_body_error_codes=frozenset(
                int(code) for code in get_option("retry_body_error_codes") or []
            ),
            retry_network_errors=bool(get_option("retry_network_errors")),
        )

    def delay_for(self, attempt: int) -> float:
        """Calculate the delay before the next attempt.

        Args:
            attempt: Number of the attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        multiplier = 1.0 + random.random() if self.randomize else 1.0
        delay = multiplier * self.min_timeout * (self.factor ** (attempt - 1))
        return min(delay, self.max_timeout)

    def is_retriable_response(self, response: httpx.Response) -> bool:
        """Check whether a failed response is worth another attempt."""
        if response.is_success:
            return False
        codes = parse_error_codes(response.content)
        if any(code in NON_RETRIABLE_BODY_ERROR_CODES for code in codes):
            return False
        if response.status_code in self.retriable_status_codes:
            return True
        return any(code in self.retriable_body_error_codes for code in codes)

    def is_retriable_exception(self, exception: Exception) -> bool:
        """Check whether a transport failure is worth another attempt."""
        return self.retry_network_errors and isinstance(
            exception, TRANSIENT_TRANSPORT_ERRORS
        )


class RetryableRequest:
    """Sends requests through an httpx client, retrying transient failures."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the request wrapper.

        Args:
            client: HTTP client used for every attempt
            policy: Retry policy for this request
            sleep: Coroutine used to wait between attempts
        """
        self.client = client
        self.policy = policy
        self._sleep = sleep

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        if response.status_code != 429:
            return None
        value = response.headers.get("Retry-After", "")
        if value.isdigit():
            return min(float(value), self.policy.max_timeout)
        return None

    async def send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying while the policy allows.

        Args:
            method: HTTP method
            url: Absolute request URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            The response of the last attempt (which may be a failure)

        Raises:
            WchNetworkError: If the service could not be reached
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                if attempt < self.policy.max_attempts and (
                    self.policy.is_retriable_exception(e)
                ):
                    delay = self.policy.delay_for(attempt)
                    logger.debug(
                        f"{method} {url} failed with {type(e).__name__}, "
                        f"retrying in {delay:.2f}s (attempt {attempt})"
                    )
                    await self._sleep(delay)
                    continue
                raise WchNetworkError(f"Network error: {e}") from e

            if attempt < self.policy.max_attempts and (
                self.policy.is_retriable_response(response)
            ):
                delay = self._retry_after(response)
                if delay is None:
                    delay = self.policy.delay_for(attempt)
                logger.debug(
                    f"{method} {url} returned {response.status_code}, "
                    f"retrying in {delay:.2f}s (attempt {attempt})"
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(
                    f"{method} {url} finished with {response.status_code} "
                    f"after {attempt} attempts"
                )
            return response
