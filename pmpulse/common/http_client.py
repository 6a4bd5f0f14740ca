"""
Rate-limited HTTP client for the AppFolio reports API.

Features:
- Connection pooling through a shared requests session
- Client-side token bucket throttling, independent of server 429s
- urllib3 Retry mounted on the adapter: exponential backoff with a capped
  delay for timeouts, connection errors, 5xx and 429 (Retry-After honoured)
- Immediate failure on non-retryable 4xx responses (auth, bad request)
- Lazy, restartable pagination following next_page_url
- Credentials read from the settings store at the start of every run
"""

import logging
import threading
import time
from dataclasses import dataclass
from itertools import takewhile
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import ClientConfig
from .settings_store import SettingsStore, CONNECTION_CATEGORY


logger = logging.getLogger(__name__)


# Resource type -> report endpoint name
REPORT_ENDPOINTS = {
    'properties': 'property_directory',
    'units': 'unit_directory',
    'vendors': 'vendor_directory',
    'work_orders': 'work_order',
    'bill_details': 'bill_detail',
    'expenses': 'expense_register',
    'rent_roll': 'rent_roll',
    'delinquency': 'delinquency',
}

RETRY_STATUSES = (429, 500, 502, 503, 504)

# Report pagination starts with a POST, so POST is retried like GET
RETRY_METHODS = frozenset({'GET', 'POST'})


class ConfigurationError(Exception):
    """Raised when the API connection is not configured (missing credentials)."""
    pass


class ApiError(Exception):
    """Base class for API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientApiError(ApiError):
    """Timeout, connection error, 5xx or 429 that persisted past the retry budget."""
    pass


class NonRetryableApiError(ApiError):
    """4xx response (other than 429) or unusable response body; never retried."""
    pass


@dataclass
class ApiCredentials:
    """Credentials loaded from the settings store for one run."""
    client_id: str
    client_secret: str
    database: str

    def __repr__(self) -> str:
        """Safe representation without the secret"""
        return f"ApiCredentials(client_id={self.client_id}, database={self.database})"


@dataclass
class Page:
    """One page of report results."""
    results: List[Dict[str, Any]]
    page_number: int
    next_page_url: Optional[str] = None

    @property
    def has_next(self) -> bool:
        return bool(self.next_page_url)


class TokenBucket:
    """
    Thread-safe token bucket.

    Holds up to ``capacity`` tokens and refills continuously at
    ``refill_rate`` tokens per second. acquire() blocks until a token is
    available.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("TokenBucket capacity and refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, **kwargs) -> 'TokenBucket':
        """Bucket allowing a burst of one minute's quota, refilled evenly."""
        return cls(capacity=requests_per_minute, refill_rate=requests_per_minute / 60.0, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def acquire(self, tokens: float = 1.0) -> float:
        """
        Take tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to take

        Returns:
            float: Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait = (tokens - self._tokens) / self.refill_rate

            logger.debug(f"Rate limiter waiting {wait:.2f}s for a token")
            self._sleep(wait)
            waited += wait

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


class ReportRetry(Retry):
    """
    urllib3 Retry with a configurable backoff multiplier.

    The delay before retry n is backoff_factor * backoff_multiplier ** (n - 1),
    capped at backoff_max. Retry-After is honoured up to the same cap.
    """

    def __init__(self, *args, backoff_multiplier: float = 2.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.backoff_multiplier = backoff_multiplier

    def new(self, **kw) -> 'ReportRetry':
        retry = super().new(**kw)
        retry.backoff_multiplier = self.backoff_multiplier
        return retry

    def get_backoff_time(self) -> float:
        consecutive = len(list(takewhile(lambda h: h.redirect_location is None, reversed(self.history))))
        if consecutive == 0:
            return 0.0
        delay = self.backoff_factor * (self.backoff_multiplier ** (consecutive - 1))
        return float(min(delay, self.backoff_max))

    def get_retry_after(self, response) -> Optional[float]:
        retry_after = super().get_retry_after(response)
        if retry_after is None:
            return None
        return min(retry_after, self.backoff_max)


class RateLimitedClient:
    """
    AppFolio reports API client.

    Usage:
        client = RateLimitedClient(settings, config.client)
        client.begin_run()
        for page in client.fetch_resource('properties'):
            ...
    """

    def __init__(
        self,
        settings: SettingsStore,
        config: Optional[ClientConfig] = None,
        session: Optional[requests.Session] = None,
        bucket: Optional[TokenBucket] = None
    ):
        """
        Initialize the client.

        Args:
            settings: Settings store holding the API credentials
            config: Retry, timeout and rate-limit configuration
            session: Optional pre-built requests session (tests inject fakes)
            bucket: Optional token bucket (default: built from requests_per_minute)
        """
        self.settings = settings
        self.config = config or ClientConfig()
        self.session = session or self._create_session()
        self.bucket = bucket or TokenBucket.per_minute(self.config.requests_per_minute)
        self._credentials: Optional[ApiCredentials] = None
        self._base_url: Optional[str] = None

    def retry_strategy(self) -> ReportRetry:
        """Retry policy mounted on the session adapter."""
        return ReportRetry(
            total=self.config.max_retries,
            backoff_factor=self.config.initial_backoff,
            backoff_multiplier=self.config.backoff_multiplier,
            backoff_max=self.config.max_backoff,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=RETRY_METHODS,
            respect_retry_after_header=True,
            raise_on_status=False,
        )

    def _create_session(self) -> requests.Session:
        """Pooled session with the retry policy on both schemes."""
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=4, pool_maxsize=8, max_retries=self.retry_strategy())
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        logger.info(
            f"HTTP client initialized: retries={self.config.max_retries}, "
            f"backoff={self.config.initial_backoff}s x{self.config.backoff_multiplier} "
            f"(max {self.config.max_backoff}s), timeout={self.config.timeout}s"
        )
        return session

    # ========================================================================
    # Credentials
    # ========================================================================

    def begin_run(self) -> ApiCredentials:
        """
        Load credentials from the settings store for a new sync run.

        Returns:
            ApiCredentials: Loaded credentials

        Raises:
            ConfigurationError: If any credential is missing
        """
        values = self.settings.get_category(CONNECTION_CATEGORY)
        missing = [k for k in ('client_id', 'client_secret', 'database') if not values.get(k)]
        if missing:
            raise ConfigurationError(f"AppFolio connection not configured (missing: {', '.join(missing)})")

        self._credentials = ApiCredentials(
            client_id=str(values['client_id']),
            client_secret=str(values['client_secret']),
            database=str(values['database']),
        )
        self._base_url = (self.config.base_url or f"https://{self._credentials.database}.appfolio.com").rstrip('/')
        logger.info(f"AppFolio client ready for {self._base_url}")
        return self._credentials

    def end_run(self) -> None:
        """Forget the credentials loaded for the finished run."""
        self._credentials = None
        self._base_url = None

    def is_configured(self) -> bool:
        """Check whether the settings store holds complete credentials."""
        values = self.settings.get_category(CONNECTION_CATEGORY)
        return all(values.get(k) for k in ('client_id', 'client_secret', 'database'))

    def mark_connection_success(self) -> None:
        self.settings.mark_connection_success()

    def mark_connection_error(self, message: str) -> None:
        self.settings.mark_connection_error(message)

    def test_connection(self) -> Tuple[bool, str]:
        """
        Check the stored credentials by fetching one property.

        The outcome is written to the connection status in the settings store.

        Returns:
            Tuple of (connected, message)
        """
        try:
            self.begin_run()
            next(iter(self.fetch_resource('properties', params={'per_page': 1})))
        except (ConfigurationError, ApiError) as e:
            logger.error(f"AppFolio connection test failed: {e}")
            self.mark_connection_error(str(e))
            return False, str(e)
        finally:
            self.end_run()

        self.mark_connection_success()
        return True, 'Connected'

    # ========================================================================
    # Fetching
    # ========================================================================

    def endpoint_url(self, resource_type: str) -> str:
        """Full report URL for a resource type."""
        if resource_type not in REPORT_ENDPOINTS:
            raise ValueError(
                f"Unknown resource type: {resource_type}. "
                f"Supported: {', '.join(sorted(REPORT_ENDPOINTS))}"
            )
        return f"{self._require_base_url()}/api/v2/reports/{REPORT_ENDPOINTS[resource_type]}.json"

    def fetch_resource(
        self,
        resource_type: str,
        since_cursor: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Iterator[Page]:
        """
        Lazily fetch every page of a report.

        Args:
            resource_type: Resource type (see REPORT_ENDPOINTS)
            since_cursor: next_page_url saved from an earlier page, to resume from
            params: Report filters sent in the JSON body of the first request

        Returns:
            Iterator of Page objects, ending after the page with no next_page_url

        Raises:
            ValueError: For an unknown resource type
            ConfigurationError: If begin_run() has not been called
        """
        url = self.endpoint_url(resource_type)
        body = dict(params or {})
        body.setdefault('paginate_results', True)
        body.setdefault('per_page', self.config.per_page)
        return self._paginate(resource_type, url, body, since_cursor)

    def _paginate(
        self,
        resource_type: str,
        url: str,
        body: Dict[str, Any],
        since_cursor: Optional[str]
    ) -> Iterator[Page]:
        page_number = 1
        if since_cursor:
            data = self._request('GET', self._absolute(since_cursor))
        else:
            data = self._request('POST', url, json=body)

        while True:
            results, next_url = self._parse_page(data)
            logger.debug(f"{resource_type}: page {page_number} with {len(results)} records")
            yield Page(results=results, page_number=page_number, next_page_url=next_url)

            if not next_url:
                return
            page_number += 1
            data = self._request('GET', self._absolute(next_url))

    @staticmethod
    def _parse_page(data: Any):
        if isinstance(data, list):
            return data, None
        if isinstance(data, dict):
            return list(data.get('results') or []), data.get('next_page_url')
        raise NonRetryableApiError(f"Unexpected response payload type: {type(data).__name__}")

    def _absolute(self, url: str) -> str:
        return urljoin(self._require_base_url() + '/', url)

    def _require_base_url(self) -> str:
        if not self._base_url or not self._credentials:
            raise ConfigurationError("begin_run() must be called before fetching")
        return self._base_url

    # ========================================================================
    # Requests
    # ========================================================================

    def _request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform one API call. Throttled by the token bucket; retried by the adapter.

        Returns:
            Decoded JSON body

        Raises:
            TransientApiError: When the retry budget is spent on timeouts,
                connection errors, 429 or 5xx
            NonRetryableApiError: On any other 4xx or an undecodable body
        """
        credentials = self._credentials
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'User-Agent': self.config.user_agent,
        }

        self.bucket.acquire()
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                headers=headers,
                auth=(credentials.client_id, credentials.client_secret),
                timeout=self.config.timeout,
            )
        except requests.exceptions.RetryError as e:
            logger.error(f"{method} {url} failed after {self.config.max_retries} retries: {e}")
            raise TransientApiError(f"Retries exhausted after {self.config.max_retries} attempts: {e}") from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.error(f"{method} {url} unreachable after {self.config.max_retries} retries: {e}")
            raise TransientApiError(f"Request failed after {self.config.max_retries} retries: {e}") from e

        status = response.status_code
        logger.debug(f"{method} {url} -> {status}")

        if status < 400:
            try:
                return response.json()
            except ValueError as e:
                raise NonRetryableApiError(f"Invalid JSON from {url}: {e}", status_code=status) from e

        if status in RETRY_STATUSES or status >= 500:
            logger.error(f"{method} {url} -> {status} after {self.config.max_retries} retries")
            raise TransientApiError(
                f"HTTP {status} after {self.config.max_retries} retries",
                status_code=status
            )

        body = (response.text or '')[:500]
        logger.error(f"{method} {url} -> {status} (not retried): {body}")
        raise NonRetryableApiError(f"HTTP {status}: {body}", status_code=status)

    def close(self):
        """Close the HTTP session and release connections"""
        if self.session:
            self.session.close()
            logger.info("HTTP client session closed")
