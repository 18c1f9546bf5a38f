"""Rate-limited client for the Luma public API."""
import logging
import threading
import time
from collections import deque
from typing import Any, Dict, Iterator, Optional

import requests

from canonical.errors import InvalidPayload, SourceUnavailable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most max_requests calls in any rolling window."""

    def __init__(self, max_requests: int = 280, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._timestamps = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a request slot is available, then take it."""
        with self._lock:
            now = time.monotonic()
            self._prune(now)

            if len(self._timestamps) >= self.max_requests:
                wait = self._timestamps[0] + self.window_seconds - now + 0.05
                if wait > 0:
                    logger.warning(f"Luma rate limit reached, waiting {wait:.2f}s")
                    time.sleep(wait)
                    now = time.monotonic()
                    self._prune(now)

            self._timestamps.append(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()


class LumaClient:
    """Read-only client for Luma calendars, events and guests."""

    BASE_URL = "https://public-api.luma.com"
    PAGE_SIZE = 50
    RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        base_delay: float = 1.0,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the Luma client.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per request before giving up (default: 3)
            base_delay: First backoff delay in seconds (default: 1)
            rate_limiter: Limiter shared by every calendar using this client
            session: Optional requests session
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.session = session or requests.Session()

    def list_events(
        self,
        api_key: str,
        after: Optional[str] = None,
        before: Optional[str] = None
    ) -> Iterator[Dict[str, Any]]:
        """
        Iterate over every event of the calendar owning the API key.

        Args:
            api_key: Calendar API key
            after: Optional ISO timestamp lower bound
            before: Optional ISO timestamp upper bound

        Yields:
            Raw Luma event objects, across all pages
        """
        params = {}
        if after:
            params['after'] = after
        if before:
            params['before'] = before

        for entry in self._paginate(api_key, '/public/v1/calendar/list-events', params):
            event = entry.get('event') if isinstance(entry, dict) else None
            if not isinstance(event, dict):
                raise InvalidPayload("list-events entry missing 'event' object")
            yield event

    def get_guests(self, api_key: str, event_id: str) -> Iterator[Dict[str, Any]]:
        """
        Iterate over every guest of an event.

        Args:
            api_key: Calendar API key
            event_id: Luma event api_id

        Yields:
            Raw Luma guest objects, with event_api_id filled in
        """
        params = {'event_api_id': event_id}
        for entry in self._paginate(api_key, '/public/v1/event/get-guests', params):
            if not isinstance(entry, dict):
                raise InvalidPayload("get-guests entry is not an object")
            guest = entry.get('guest', entry)
            guest.setdefault('event_api_id', event_id)
            yield guest

    def get_event(self, api_key: str, event_id: str) -> Dict[str, Any]:
        """Fetch a single event by api_id."""
        data = self._get(api_key, '/public/v1/event/get', {'event_api_id': event_id})
        event = data.get('event')
        if not isinstance(event, dict):
            raise InvalidPayload("event/get response missing 'event' object")
        return event

    def _paginate(
        self,
        api_key: str,
        path: str,
        params: Dict[str, Any]
    ) -> Iterator[Dict[str, Any]]:
        """
        Follow next_cursor until the provider reports no more pages.

        No cursor is kept between calls; every call starts from the
        first page.
        """
        cursor = None
        seen_cursors = set()
        page = 0

        while True:
            page_params = dict(params, pagination_limit=self.PAGE_SIZE)
            if cursor:
                page_params['pagination_cursor'] = cursor

            data = self._get(api_key, path, page_params)
            entries = data.get('entries')
            if not isinstance(entries, list):
                raise InvalidPayload(f"Luma response for {path} missing 'entries'")

            page += 1
            logger.debug(f"Fetched page {page} of {path} with {len(entries)} entries")

            for entry in entries:
                yield entry

            cursor = data.get('next_cursor')
            if not data.get('has_more') or not cursor:
                break
            if cursor in seen_cursors:
                logger.warning(f"Luma returned repeated cursor for {path}, stopping")
                break
            seen_cursors.add(cursor)

    def _get(self, api_key: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        GET a Luma endpoint with rate limiting and retry logic.

        Args:
            api_key: Calendar API key
            path: Endpoint path
            params: Query parameters

        Returns:
            Decoded JSON object

        Raises:
            SourceUnavailable: If the request fails after all retries
            InvalidPayload: If the body is not a JSON object
        """
        url = f"{self.BASE_URL}{path}"
        headers = {'x-luma-api-key': api_key, 'Accept': 'application/json'}

        for attempt in range(self.max_retries):
            self.rate_limiter.acquire()
            last_attempt = attempt == self.max_retries - 1

            try:
                logger.debug(f"GET {path} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )
            except requests.RequestException as e:
                if last_attempt:
                    logger.error(f"All {self.max_retries} attempts to {path} failed. Last error: {e}")
                    raise SourceUnavailable(f"Luma request failed: {e}", url=url)
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
                continue

            if response.status_code in self.RETRYABLE_STATUSES:
                if last_attempt:
                    logger.error(
                        f"All {self.max_retries} attempts to {path} failed "
                        f"with status {response.status_code}"
                    )
                    raise SourceUnavailable(
                        f"Luma API error: {response.status_code} after retries",
                        status_code=response.status_code,
                        url=url
                    )
                delay = self._retry_delay(response, attempt)
                logger.warning(
                    f"Luma returned {response.status_code} for {path} "
                    f"(attempt {attempt + 1}/{self.max_retries}). Retrying in {delay} seconds..."
                )
                time.sleep(delay)
                continue

            if not response.ok:
                raise SourceUnavailable(
                    f"Luma API error: {response.status_code} {response.reason} - {response.text[:200]}",
                    status_code=response.status_code,
                    url=url
                )

            try:
                data = response.json()
            except ValueError as e:
                raise InvalidPayload(f"Luma returned invalid JSON for {path}: {e}")
            if not isinstance(data, dict):
                raise InvalidPayload(f"Luma returned non-object JSON for {path}")
            return data

        raise SourceUnavailable(f"Luma request to {path} was not attempted", url=url)

    def _retry_delay(self, response: requests.Response, attempt: int) -> float:
        retry_after = response.headers.get('retry-after')
        if response.status_code == 429 and retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return self.base_delay * (2 ** attempt)
