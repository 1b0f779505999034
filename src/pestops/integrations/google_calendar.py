"""Google Calendar events client."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from pestops.integrations.base import ProviderClient
from pestops.integrations.credentials import Provider
from pestops.integrations.tokens import AccessGranted, TokenLifecycleManager

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
DEFAULT_EVENT_DURATION = timedelta(hours=1)


def _parse_datetime(value: Any) -> datetime:  # noqa: ANN401
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"not a datetime: {value!r}")


@dataclass(frozen=True)
class CalendarEventSpec:
    """A scheduled appointment, in domain terms."""

    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    attendees: list[str] = field(default_factory=list)
    timezone: str | None = None
    status_tag: str | None = None
    source_id: str | None = None

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], timezone: str | None = None
    ) -> "CalendarEventSpec":
        """Build from a ``schedule_created`` style payload.

        Raises:
            ValueError: when the payload has no start time.
        """
        start_raw = payload.get("startTime") or payload.get("start")
        if not start_raw:
            raise ValueError("schedule payload has no startTime")
        start = _parse_datetime(start_raw)
        end_raw = payload.get("endTime") or payload.get("end")
        end = _parse_datetime(end_raw) if end_raw else start + DEFAULT_EVENT_DURATION
        attendees = [
            email
            for email in (
                payload.get("attendees")
                or [payload.get("customerEmail"), payload.get("employeeEmail")]
            )
            if email
        ]
        return cls(
            title=payload.get("title") or payload.get("serviceType") or "Service visit",
            start=start,
            end=end,
            description=payload.get("description") or payload.get("notes"),
            location=payload.get("address") or payload.get("location"),
            attendees=attendees,
            timezone=timezone,
            source_id=str(payload["id"]) if payload.get("id") is not None else None,
        )

    def to_wire(self) -> dict[str, Any]:
        def when(value: datetime) -> dict[str, str]:
            wire = {"dateTime": value.isoformat()}
            if self.timezone:
                wire["timeZone"] = self.timezone
            return wire

        event: dict[str, Any] = {
            "summary": self.title,
            "start": when(self.start),
            "end": when(self.end),
        }
        if self.description:
            event["description"] = self.description
        if self.location:
            event["location"] = self.location
        if self.attendees:
            event["attendees"] = [{"email": email} for email in self.attendees]
        private: dict[str, str] = {}
        if self.status_tag:
            private["status"] = self.status_tag
        if self.source_id:
            private["sourceId"] = self.source_id
        if private:
            event["extendedProperties"] = {"private": private}
        return event


class GoogleCalendarClient(ProviderClient):
    """Event CRUD scoped by calendar id. Holds no tokens."""

    provider = Provider.GOOGLE

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: TokenLifecycleManager,
        api_base_url: str = GOOGLE_CALENDAR_API,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client, tokens, timeout)
        self.api_base_url = api_base_url.rstrip("/")

    def _url(self, grant: AccessGranted, path: str) -> str:
        return f"{self.api_base_url}/{path.lstrip('/')}"

    def _error_message(self, response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return super()._error_message(response)

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def list_events(
        self,
        user_id: str,
        calendar_id: str = "primary",
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = 250,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        if time_min:
            params["timeMin"] = time_min.isoformat()
        if time_max:
            params["timeMax"] = time_max.isoformat()
        body = await self._request(
            "GET", user_id, self._events_path(calendar_id), params=params
        )
        return body.get("items", [])

    async def create_event(
        self,
        user_id: str,
        event: CalendarEventSpec,
        calendar_id: str = "primary",
        send_invites: bool = False,
    ) -> dict[str, Any]:
        created = await self._request(
            "POST",
            user_id,
            self._events_path(calendar_id),
            params={"sendUpdates": "all" if send_invites else "none"},
            json=event.to_wire(),
        )
        logger.info(f"Created Google Calendar event {created.get('id')} for {user_id}")
        return created

    async def update_event(
        self,
        user_id: str,
        event_id: str,
        changes: dict[str, Any],
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        """PATCH selected wire fields of an existing event."""
        return await self._request(
            "PATCH", user_id, self._events_path(calendar_id, event_id), json=changes
        )

    async def delete_event(
        self, user_id: str, event_id: str, calendar_id: str = "primary"
    ) -> None:
        await self._request(
            "DELETE", user_id, self._events_path(calendar_id, event_id)
        )
