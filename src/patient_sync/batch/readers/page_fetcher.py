"""
Page fetcher for paginated clinical API endpoints.

Fetches one page per call with a minimum spacing between requests, a
per-request timeout and bounded exponential-backoff retries. Transient
failures (network errors, timeouts, HTTP 5xx and 429, malformed bodies) are
retried; other HTTP 4xx responses fail immediately.
"""

import time
from typing import Any, Callable

import httpx

from patient_sync.core.exceptions import FetchError, ParseError, PipelineError
from patient_sync.core.models import SourceConfig
from patient_sync.observability import metrics
from patient_sync.observability.logger import get_logger

from .bundle_extractor import next_link, validate_container
from .rate_limiter import RateLimiter

logger = get_logger(__name__)

FHIR_JSON = "application/fhir+json"

RetryCallback = Callable[[int, PipelineError, float], None]


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number `attempt + 1`: base * 2**attempt, capped."""
    return min(base * (2 ** attempt), maximum)


def _retry_reason(error: PipelineError) -> str:
    if isinstance(error, ParseError):
        return "parse"
    if isinstance(error, FetchError) and error.status_code is not None:
        return "http_429" if error.status_code == 429 else "http_5xx"
    return "transport"


class PageFetcher:
    """
    Fetches pages from one source's clinical API.

    The fetcher owns its httpx client unless one is injected. Use as a
    context manager, or call close() when done.
    """

    def __init__(
        self,
        source_config: SourceConfig,
        client: httpx.Client | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: RetryCallback | None = None,
    ):
        """
        Initialize page fetcher.

        Args:
            source_config: Endpoint, pacing and retry settings
            client: httpx client to use (a new one is created when omitted)
            rate_limiter: Shared limiter (defaults to one using the source's
                min_request_interval)
            sleep: Sleep used for backoff delays
            on_retry: Called as on_retry(attempt, error, delay) before each retry
        """
        self.config = source_config
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=source_config.request_timeout,
            follow_redirects=True,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            source_config.min_request_interval, sleep=sleep
        )
        self._sleep = sleep
        self.on_retry = on_retry
        self.headers = {"Accept": FHIR_JSON, **source_config.headers}

    def fetch_page(self, cursor: str) -> tuple[dict[str, Any], str | None]:
        """
        Fetch the page at a cursor.

        Args:
            cursor: Absolute URL of the page

        Returns:
            Tuple of (Bundle page, next cursor or None)

        Raises:
            FetchError: Non-transient HTTP error, or retry budget exhausted
            ParseError: Body still malformed after the retry budget
        """
        source = self.config.source_system
        max_retries = self.config.max_retries
        attempt = 0

        with metrics.track_duration(metrics.page_fetch_duration_seconds, source_system=source):
            while True:
                try:
                    page = self._attempt(cursor)
                except (FetchError, ParseError) as e:
                    retryable = isinstance(e, ParseError) or e.retryable
                    if not retryable or attempt >= max_retries:
                        metrics.increment_counter(
                            metrics.pages_fetched_total, source_system=source, status="failure"
                        )
                        raise self._exhausted(e, attempt + 1) from e

                    delay = backoff_delay(attempt, self.config.backoff_base, self.config.backoff_max)
                    attempt += 1
                    metrics.increment_counter(
                        metrics.fetch_retries_total, source_system=source, reason=_retry_reason(e)
                    )
                    logger.warning(
                        f"Fetch attempt {attempt} failed, retrying in {delay:.1f}s: {e.message}",
                        extra={"source_system": source, "cursor": cursor, "attempt": attempt},
                    )
                    if self.on_retry is not None:
                        self.on_retry(attempt, e, delay)
                    self._sleep(delay)
                    continue

                metrics.increment_counter(
                    metrics.pages_fetched_total, source_system=source, status="success"
                )
                return page, next_link(page)

    def _attempt(self, url: str) -> dict[str, Any]:
        self.rate_limiter.acquire()
        try:
            response = self.client.get(
                url, headers=self.headers, timeout=self.config.request_timeout
            )
        except httpx.TransportError as e:
            raise FetchError(f"Request to {url} failed: {e}", url=url, retryable=True) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise FetchError(
                f"Transient HTTP {status} from {url}", status_code=status, url=url, retryable=True
            )
        if not response.is_success:
            raise FetchError(
                f"HTTP {status} from {url}", status_code=status, url=url, retryable=False
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ParseError(f"Response from {url} is not valid JSON: {e}", url=url) from e

        return validate_container(body, url=url)

    @staticmethod
    def _exhausted(error: FetchError | ParseError, attempts: int) -> PipelineError:
        if isinstance(error, ParseError):
            return ParseError(
                f"{error.message} (after {attempts} attempts)", url=error.url, attempts=attempts
            )
        message = f"{error.message} (after {attempts} attempts)" if error.retryable else error.message
        return FetchError(
            message,
            status_code=error.status_code,
            url=error.url,
            retryable=False,
            attempts=attempts,
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
