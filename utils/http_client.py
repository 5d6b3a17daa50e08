"""HTTP client with retries and rate limiting."""
import time
import logging
import requests

from __version__ import __version__

logger = logging.getLogger("alertmon.http")


class APIError(Exception):
    """API request error with status code and response body."""
    def __init__(self, message, status_code=None, response_body=None, source=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.source = source


class HTTPClient:
    """HTTP JSON client with retry logic and optional rate limiting."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    NON_RETRYABLE_STATUS = {400, 401, 403, 404}

    def __init__(self, base_url, rate_limiter=None, timeout=30, max_retries=3,
                 backoff_seconds=2.0, headers=None):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": f"alertmon/{__version__}"})
        if headers:
            self.session.headers.update(headers)

    def get(self, path="", params=None):
        return self._request("GET", path, params)

    def _backoff(self, attempt):
        return min(2 ** attempt * self.backoff_seconds, 60)

    def _request(self, method, path, params=None):
        url = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url

        last_error = None
        for attempt in range(self.max_retries + 1):
            if self.rate_limiter:
                self.rate_limiter.wait()

            try:
                start = time.time()
                resp = self.session.request(method, url, params=params, timeout=self.timeout)
                latency = int((time.time() - start) * 1000)
                logger.debug(f"{method} {url} -> {resp.status_code} ({latency}ms)")

                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError:
                        return resp.text

                if resp.status_code in self.NON_RETRYABLE_STATUS:
                    raise APIError(
                        f"HTTP {resp.status_code} from {url}",
                        status_code=resp.status_code,
                        response_body=resp.text,
                    )

                if resp.status_code in self.RETRYABLE_STATUS:
                    last_error = APIError(f"HTTP {resp.status_code} from {url}", status_code=resp.status_code)
                    if attempt >= self.max_retries:
                        break
                    retry_after = resp.headers.get("Retry-After")
                    wait = float(retry_after) if retry_after else self._backoff(attempt)
                    logger.warning(f"Retryable {resp.status_code} from {url}, waiting {wait:.1f}s (attempt {attempt + 1})")
                    time.sleep(wait)
                    continue

                raise APIError(f"Unexpected HTTP {resp.status_code} from {url}", status_code=resp.status_code)

            except requests.exceptions.RequestException as e:
                logger.warning(f"Request error for {url}: {e} (attempt {attempt + 1})")
                last_error = e
                if attempt < self.max_retries:
                    time.sleep(self._backoff(attempt))

        raise last_error or APIError(f"Max retries exceeded for {url}")
