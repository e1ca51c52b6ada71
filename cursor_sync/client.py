"""Cursor Admin API client for the endpoints the sync engine reads."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

import aiohttp
from pydantic import ValidationError as PydanticValidationError
from yarl import URL

from cursor_sync.dates import ensure_utc, to_epoch_ms
from cursor_sync.exceptions import (
    AuthError,
    NetworkError,
    RateLimitError,
    RemoteFetchError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
)
from cursor_sync.models import DailyUsageRecord, DailyUsageResponse, TeamMember
from cursor_sync.retry import RetryConfig, RetryHandler

logger = logging.getLogger(__name__)

MAX_WINDOW_DAYS = 30
MEMBERS_PATH = "/teams/members"
DAILY_USAGE_PATH = "/teams/daily-usage-data"


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Seconds from a ``Retry-After`` header, ``None`` if absent or not numeric."""
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric Retry-After: {value!r}")
        return None


async def check_status(response: aiohttp.ClientResponse) -> None:
    """Raise the matching RemoteFetchError subclass for a non-2xx response."""
    status = response.status
    if status < 400:
        return
    if status in (401, 403):
        raise AuthError(
            f"Authentication failed ({status}) - check your API key", status, response
        )

    text = await response.text()
    if status == 429:
        raise RateLimitError(
            f"Rate limit exceeded: {text}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            response=response,
        )
    error_cls = ServerError if status >= 500 else RemoteFetchError
    raise error_cls(f"API request failed: {status} {text}", status, response)


class CursorAdminClient:
    """Async client for the two Admin API endpoints a sync needs.

    Authenticates with the API key as the Basic-auth user name. Open it with
    ``async with``; calls made outside the context raise ValidationError.
    """

    BASE_URL = "https://api.cursor.com"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: int = 30
    ) -> None:
        if not api_key:
            raise ValidationError("API key not configured")

        self.api_key = api_key
        self.base_url = URL(base_url or self.BASE_URL)
        self.retry_handler = RetryHandler(retry_config or RetryConfig())
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "CursorAdminClient":
        self._session = aiohttp.ClientSession(
            base_url=str(self.base_url),
            auth=aiohttp.BasicAuth(self.api_key, ""),
            timeout=self.timeout,
            headers={"User-Agent": "cursor-sync/0.1.0", "Accept": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _request_json(self, method: str, path: str, **kwargs) -> Any:
        """Send one request and decode the body.

        A body that is not JSON decodes to ``None`` so callers treat it like
        any other unrecognised shape.
        """
        if self._session is None:
            raise ValidationError("Client must be used as an async context manager")

        try:
            async with self._session.request(method, path, **kwargs) as response:
                await check_status(response)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    logger.warning(f"{method} {path} returned a non-JSON body: {e}")
                    return None
        except asyncio.TimeoutError as e:
            logger.error(f"{method} {path} timed out")
            raise RequestTimeoutError(f"Request timed out after {self.timeout.total}s") from e
        except aiohttp.ClientError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise NetworkError(f"Connection failed: {e}") from e

    async def _fetch_members_once(self) -> List[TeamMember]:
        data = await self._request_json("GET", MEMBERS_PATH)
        if isinstance(data, dict):
            data = data.get("teamMembers", data.get("members"))
        if not isinstance(data, list):
            logger.warning("Team members response had no member list; treating as empty")
            return []
        try:
            return [TeamMember.model_validate(item) for item in data]
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed team members response: {e}")
            return []

    async def _fetch_usage_once(self, body: dict) -> List[DailyUsageRecord]:
        data = await self._request_json("POST", DAILY_USAGE_PATH, json=body)
        if not (isinstance(data, dict) and isinstance(data.get("data"), list)):
            logger.warning("Daily usage response had no data list; treating as empty")
            return []
        try:
            records = DailyUsageResponse.model_validate(data).data
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed daily usage response: {e}")
            return []
        logger.debug(f"Received {len(records)} daily usage rows")
        return records

    async def get_team_members(self) -> List[TeamMember]:
        """Current team roster. Empty when the payload shape is not recognised."""
        return await self.retry_handler.execute_with_retry(self._fetch_members_once)

    async def get_daily_usage_data(
        self, start_date: datetime, end_date: datetime
    ) -> List[DailyUsageRecord]:
        """Per-user daily rows between two instants, at most 30 days apart.

        Longer ranges must be split by the caller.

        Raises:
            ValidationError: If the window is reversed or too long
            RemoteFetchError: If the API answers with a non-success status
        """
        start_date, end_date = ensure_utc(start_date), ensure_utc(end_date)
        span = end_date - start_date

        if span < timedelta(0):
            raise ValidationError("End date must be after start date")
        if span > timedelta(days=MAX_WINDOW_DAYS):
            raise ValidationError(
                f"Date range cannot exceed {MAX_WINDOW_DAYS} days. Got {span.days} days."
            )

        body = {"startDate": to_epoch_ms(start_date), "endDate": to_epoch_ms(end_date)}
        return await self.retry_handler.execute_with_retry(self._fetch_usage_once, body)
