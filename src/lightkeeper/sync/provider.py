"""External calendar and mail provider client.

``CalendarProvider`` and ``MailProvider`` are the interfaces the sync engines
depend on; ``NylasClient`` implements both against the Nylas v3 REST API.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from .models import EmailMessage, ExternalCalendar, ExternalEvent, pick_primary_calendar
from ..utils.datetime import add_days, now_utc, to_epoch


logger = logging.getLogger(__name__)


DEFAULT_WINDOW_DAYS = 30
DEFAULT_EVENT_DURATION = timedelta(hours=1)
DEFAULT_MESSAGE_LIMIT = 50


class ProviderError(Exception):
    """Base exception for provider operations."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthenticationError(ProviderError):
    """The API key or grant was rejected."""
    pass


class ProviderNotFoundError(ProviderError):
    """The requested grant, calendar or event does not exist."""
    pass


class ProviderRateLimitError(ProviderError):
    """Rate limit exceeded."""
    pass


class ProviderNetworkError(ProviderError):
    """Network connectivity issues or timeouts."""
    pass


class CalendarProvider(ABC):
    """Interface for reading and writing an external calendar account."""

    @abstractmethod
    async def fetch_calendars(self, grant_id: str) -> List[ExternalCalendar]:
        """Fetch all calendars for a grant.

        Raises:
            ProviderError: If the request fails
        """
        pass

    @abstractmethod
    async def fetch_calendar_events(self, grant_id: str, calendar_id: Optional[str] = None,
                                    start: Optional[int] = None, end: Optional[int] = None,
                                    limit: int = 100) -> List[ExternalEvent]:
        """Fetch events in ``[start, end]`` (epoch seconds).

        Args:
            grant_id: Provider grant for the account
            calendar_id: Calendar to read; the primary calendar when None
            start: Window start, defaults to now
            end: Window end, defaults to now + 30 days
            limit: Maximum number of events returned

        Returns:
            Events in provider order

        Raises:
            ProviderError: If the request fails or the grant has no calendars
        """
        pass

    @abstractmethod
    async def create_calendar_event(self, grant_id: str, calendar_id: str, title: str,
                                    start_time: datetime, description: Optional[str] = None,
                                    end_time: Optional[datetime] = None,
                                    location: Optional[str] = None) -> ExternalEvent:
        """Create a timed event; ``end_time`` defaults to one hour after start.

        Raises:
            ProviderError: If the request fails
        """
        pass

    async def test_connection(self, grant_id: str) -> Dict[str, Any]:
        """Check that the grant is reachable."""
        await self.fetch_calendars(grant_id)
        return {'grant_id': grant_id}

    async def aclose(self):
        """Release network resources."""
        pass


class MailProvider(ABC):
    """Interface for reading an external mailbox."""

    @abstractmethod
    async def fetch_messages(self, grant_id: str, limit: int = DEFAULT_MESSAGE_LIMIT,
                             received_after: Optional[int] = None) -> List[EmailMessage]:
        """Fetch the most recent messages, newest first.

        Args:
            grant_id: Provider grant for the mailbox
            limit: Maximum number of messages returned
            received_after: Only messages received after this epoch second

        Raises:
            ProviderError: If the request fails
        """
        pass

    @abstractmethod
    async def fetch_message(self, grant_id: str, message_id: str) -> EmailMessage:
        """Fetch one message with its full body.

        Raises:
            ProviderNotFoundError: If the message does not exist
            ProviderError: If the request fails
        """
        pass

    async def aclose(self):
        """Release network resources."""
        pass


class NylasClient(CalendarProvider, MailProvider):
    """Nylas v3 API client."""

    DEFAULT_BASE_URL = "https://api.us.nylas.com"

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize Nylas API client.

        Args:
            api_key: Nylas API key
            base_url: API host, defaults to the US region
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=transport,
        )
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def _make_request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                            json_body: Optional[Dict[str, Any]] = None) -> Any:
        """Make HTTP request to the Nylas API and unwrap ``data``.

        Raises:
            ProviderAuthenticationError: On 401/403
            ProviderNotFoundError: On 404
            ProviderRateLimitError: On 429
            ProviderError: On any other error status, or a body that is not JSON
            ProviderNetworkError: On timeouts and transport failures
        """
        try:
            response = await self.client.request(method, path, params=params, json=json_body)
        except httpx.TimeoutException:
            raise ProviderNetworkError(f"Nylas request timed out: {method} {path}")
        except httpx.RequestError as e:
            raise ProviderNetworkError(f"Nylas request failed: {e}")

        if response.status_code >= 400:
            message = self._error_message(response)
            if response.status_code in (401, 403):
                raise ProviderAuthenticationError(message, response.status_code)
            if response.status_code == 404:
                raise ProviderNotFoundError(message, response.status_code)
            if response.status_code == 429:
                raise ProviderRateLimitError(message, response.status_code)
            raise ProviderError(message, response.status_code)

        if response.status_code == 204 or not response.content:
            return None

        try:
            payload = response.json()
        except ValueError:
            raise ProviderError(
                f"Nylas returned an invalid response body: {method} {path}", response.status_code
            )
        if isinstance(payload, dict) and 'data' in payload:
            return payload['data']
        return payload

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Pull the most useful message out of an error response."""
        detail = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get('error')
            if isinstance(error, dict) and error.get('message'):
                detail = error['message']
            elif body.get('message'):
                detail = body['message']
        return f"Nylas API error {response.status_code}: {detail}"

    # Grants

    async def test_connection(self, grant_id: str) -> Dict[str, Any]:
        """Fetch the grant record."""
        return await self._make_request("GET", f"/v3/grants/{grant_id}") or {}

    # Calendars

    async def fetch_calendars(self, grant_id: str) -> List[ExternalCalendar]:
        data = await self._make_request("GET", f"/v3/grants/{grant_id}/calendars") or []
        calendars = [ExternalCalendar.from_dict(item) for item in data]
        self.logger.debug(f"Fetched {len(calendars)} calendars for grant {grant_id}")
        return calendars

    # Events

    async def fetch_calendar_events(self, grant_id: str, calendar_id: Optional[str] = None,
                                    start: Optional[int] = None, end: Optional[int] = None,
                                    limit: int = 100) -> List[ExternalEvent]:
        now = now_utc()
        start = start if start is not None else to_epoch(now)
        end = end if end is not None else to_epoch(add_days(now, DEFAULT_WINDOW_DAYS))

        if not calendar_id:
            # calendar_id is required by the events endpoint
            primary = pick_primary_calendar(await self.fetch_calendars(grant_id))
            if primary is None:
                raise ProviderError("No calendars found for this grant")
            calendar_id = primary.id

        params = {
            "calendar_id": calendar_id,
            "start": start,
            "end": end,
            "limit": limit,
        }
        data = await self._make_request("GET", f"/v3/grants/{grant_id}/events", params=params) or []
        events = [ExternalEvent.from_dict(item) for item in data]
        self.logger.debug(f"Fetched {len(events)} events from calendar {calendar_id} ({start}..{end})")
        return events

    async def create_calendar_event(self, grant_id: str, calendar_id: str, title: str,
                                    start_time: datetime, description: Optional[str] = None,
                                    end_time: Optional[datetime] = None,
                                    location: Optional[str] = None) -> ExternalEvent:
        end_time = end_time or start_time + DEFAULT_EVENT_DURATION
        body: Dict[str, Any] = {
            "title": title,
            "when": {
                "start_time": to_epoch(start_time),
                "end_time": to_epoch(end_time),
                "object": "timespan",
            },
        }
        if description:
            body["description"] = description
        if location:
            body["location"] = location

        data = await self._make_request(
            "POST",
            f"/v3/grants/{grant_id}/events",
            params={"calendar_id": calendar_id},
            json_body=body,
        )
        if not data:
            raise ProviderError("Nylas returned an empty event")
        data.setdefault("calendar_id", calendar_id)
        return ExternalEvent.from_dict(data)

    # Messages

    async def fetch_messages(self, grant_id: str, limit: int = DEFAULT_MESSAGE_LIMIT,
                             received_after: Optional[int] = None) -> List[EmailMessage]:
        params: Dict[str, Any] = {"limit": limit}
        if received_after is not None:
            params["received_after"] = received_after
        data = await self._make_request("GET", f"/v3/grants/{grant_id}/messages", params=params) or []
        messages = [EmailMessage.from_dict(item) for item in data]
        self.logger.debug(f"Fetched {len(messages)} messages for grant {grant_id}")
        return messages

    async def fetch_message(self, grant_id: str, message_id: str) -> EmailMessage:
        data = await self._make_request("GET", f"/v3/grants/{grant_id}/messages/{message_id}")
        if not data:
            raise ProviderError(f"Nylas returned an empty message: {message_id}")
        return EmailMessage.from_dict(data)
