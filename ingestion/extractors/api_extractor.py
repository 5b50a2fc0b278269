"""
Paginated REST API extractor with authentication, rate limiting, and retry logic.

This module provides robust API extraction with:
- Cursor-token or page-number pagination, capped at page_cap pages
- Exponential backoff retry logic for transient failures within a request
- Circuit breaker pattern to prevent hammering a failing upstream
- Rate limiting protection (HTTP 429, Retry-After)
- Resume support: a failure mid-pagination leaves the extraction's
  watermark at the last fully consumed page
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    RateLimitError,
    ResourceNotFoundError,
    SchemaMismatch,
    SourceUnavailable,
)
from ingestion.base import Page, SourceExtractor
from models.base import WatermarkKind
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """
    Consecutive failed requests to one source.

    Opens after `threshold` failures and stays open for `reset_after`
    seconds. One breaker per source id lives for the whole process, so it
    spans every extraction (and every task) of that source.
    """
    source_id: str
    threshold: int = 5
    reset_after: float = 60.0
    failures: int = 0
    open_until: Optional[datetime] = None

    def is_open(self) -> bool:
        if self.open_until is None:
            return False
        if datetime.utcnow() >= self.open_until:
            logger.info(f"Circuit breaker reset for {self.source_id}")
            self.failures = 0
            self.open_until = None
            return False
        return True

    def record_failure(self):
        self.failures += 1
        if self.failures >= self.threshold and self.open_until is None:
            self.open_until = datetime.utcnow() + timedelta(seconds=self.reset_after)
            logger.warning(
                f"Circuit breaker opened for {self.source_id} after {self.failures} failures; "
                f"closed again in {self.reset_after} seconds",
                extra={"source_id": self.source_id}
            )

    def record_success(self):
        self.failures = 0
        self.open_until = None


_breakers: Dict[str, CircuitBreaker] = {}


def circuit_breaker(source_id: str) -> CircuitBreaker:
    """Process-wide breaker for a source"""
    if source_id not in _breakers:
        _breakers[source_id] = CircuitBreaker(source_id)
    return _breakers[source_id]


class APIExtractor(SourceExtractor):
    """
    Extract records from a paginated REST API.

    connection:
        url:               Endpoint URL
        api_key:           Bearer token (defaults to settings.API_KEY)
        records_field:     Key holding the records in a JSON object response ("data")
        cursor_param:      Query parameter carrying the cursor token ("cursor")
        next_cursor_field: Response key with the next cursor token ("next_cursor")
        since_param:       Query parameter for integer/timestamp watermarks ("since")
        page_size_param:   Query parameter for the page size ("limit")

    Cursor sources advance the watermark to the cursor token that resumes
    after the last consumed page; integer/timestamp sources advance it to
    the highest record position seen.

    Attributes:
        max_retries: Maximum request attempts within one page fetch (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
    """

    def __init__(
        self,
        source,
        timeout: Optional[float] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        request_timeout: float = 30.0
    ):
        super().__init__(source, timeout)
        conn = source.connection
        self.api_url = conn["url"]
        self.api_key = conn.get("api_key") or settings.API_KEY
        self.records_field = conn.get("records_field", "data")
        self.cursor_param = conn.get("cursor_param", "cursor")
        self.next_cursor_field = conn.get("next_cursor_field", "next_cursor")
        self.since_param = conn.get("since_param", "since")
        self.page_size_param = conn.get("page_size_param", "limit")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout
        self.breaker = circuit_breaker(source.source_id)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _make_request_with_retry(
        self,
        client: httpx.AsyncClient,
        params: Dict[str, Any]
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Raises:
            AuthenticationError / ResourceNotFoundError: Non-retryable HTTP errors
            RateLimitError / SourceUnavailable: Retryable errors after max retries
        """
        url = self.api_url
        context = {"source_id": self.source_id, "api_url": url}

        if self.breaker.is_open():
            raise SourceUnavailable(
                f"Circuit breaker is open for {self.source_id}",
                context={**context, "open_until": self.breaker.open_until.isoformat()}
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")

                response = await client.get(
                    url,
                    headers=self._headers(),
                    params=params,
                    timeout=self.request_timeout
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if not last_attempt:
                    logger.warning(f"{type(e).__name__} from {url}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self.breaker.record_failure()
                raise SourceUnavailable(
                    f"Request to {url} failed after {self.max_retries} attempts",
                    context={**context, "retry_count": attempt + 1},
                    original_exception=e
                )

            if response.status_code in (401, 403):
                self.breaker.record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={**context, "status_code": response.status_code}
                )

            if response.status_code == 404:
                self.breaker.record_failure()
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={**context, "status_code": 404}
                )

            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", delay))
                if not last_attempt:
                    logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                self.breaker.record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={**context, "status_code": 429, "retry_count": attempt + 1},
                    retry_after=retry_after
                )

            if response.status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"Server error {response.status_code}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self.breaker.record_failure()
                raise SourceUnavailable(
                    f"Server error after {self.max_retries} attempts",
                    context={
                        **context,
                        "status_code": response.status_code,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]  # Truncate
                    }
                )

            if response.status_code >= 400:
                raise SchemaMismatch(
                    f"Request rejected by {url}",
                    context={
                        **context,
                        "status_code": response.status_code,
                        "response_body": response.text[:500]
                    }
                )

            self.breaker.record_success()
            return response

        raise SourceUnavailable("Max retries exceeded", context=context)

    def _parse(self, response: httpx.Response, page: int) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Split a response into (records, envelope)"""
        try:
            data = response.json()
        except ValueError as e:
            raise SchemaMismatch(
                "Failed to parse JSON response",
                context={
                    "source_id": self.source_id,
                    "api_url": self.api_url,
                    "page": page,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

        # Handle different API response formats
        if isinstance(data, list):
            return data, {}
        if isinstance(data, dict):
            records = data.get(self.records_field, data.get("results", []))
            if not isinstance(records, list):
                raise SchemaMismatch(
                    f"Response field '{self.records_field}' is not a list",
                    context={"source_id": self.source_id, "api_url": self.api_url, "page": page}
                )
            return records, data
        raise SchemaMismatch(
            "Unexpected response body",
            context={"source_id": self.source_id, "api_url": self.api_url, "page": page}
        )

    async def read_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        if self.source.watermark_kind == WatermarkKind.CURSOR and self.source.incremental:
            pages = self._read_cursor_pages(from_watermark)
        else:
            pages = self._read_numbered_pages(from_watermark)
        async for page in pages:
            yield page

    async def _read_cursor_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        """Follow next-cursor tokens; the watermark is the cursor to resume from"""
        cursor = from_watermark.value if from_watermark else None
        sequence = from_watermark.sequence if from_watermark else 0

        async with httpx.AsyncClient(timeout=self.request_timeout) as client:
            for page_number in range(1, self.source.page_cap + 1):
                params = {self.page_size_param: self.source.batch_size}
                if cursor:
                    params[self.cursor_param] = cursor

                logger.info(f"Fetching page {page_number} from {self.api_url} (cursor: {cursor})")
                response = await self._make_request_with_retry(client, params)
                records, envelope = self._parse(response, page_number)
                next_cursor = envelope.get(self.next_cursor_field)

                if not records:
                    break

                sequence += 1
                # Without a next cursor the last page is re-read next time
                resume_cursor = next_cursor or cursor or ""
                yield Page(
                    records=records,
                    watermark=Watermark.of(WatermarkKind.CURSOR, resume_cursor, sequence=sequence),
                    cursor=resume_cursor,
                )

                if not next_cursor:
                    break
                cursor = next_cursor

    async def _read_numbered_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        """`since` filter plus page numbers, as most list endpoints expose"""
        params: Dict[str, Any] = {self.page_size_param: self.source.batch_size}
        if from_watermark is not None:
            # Only fetch records newer than the watermark
            params[self.since_param] = from_watermark.value

        async with httpx.AsyncClient(timeout=self.request_timeout) as client:
            for page_number in range(1, self.source.page_cap + 1):
                params["page"] = page_number

                logger.info(f"Fetching page {page_number} from {self.api_url}")
                response = await self._make_request_with_retry(client, params)
                page_records, envelope = self._parse(response, page_number)
                if not page_records:
                    break

                records = page_records
                if from_watermark is not None and self.source.incremental:
                    # Endpoints that ignore `since` must not move us backwards
                    records = [
                        r for r in records
                        if self.source.record_watermark(r) > from_watermark
                    ]

                if records:
                    watermark = self.page_watermark(records) if self.source.incremental else None
                    yield Page(records=records, watermark=watermark)

                # More pages follow only while the server says so (or pages come back full)
                if envelope:
                    if not envelope.get("has_next", False):
                        break
                elif len(page_records) < self.source.batch_size:
                    break
