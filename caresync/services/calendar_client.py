"""
Google Calendar Client
Thin async wrapper over the Calendar v3 REST API for one credential owner.

Every call has a bounded timeout. A timeout, transport error, 401 or 5xx
is retried exactly once with a freshly refreshed access token; a second
failure raises ExternalServiceError.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

RETRYABLE_STATUS = {401, 500, 502, 503, 504}


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse Google's timestamps ("2025-03-03T14:00:00-05:00", "...Z") to aware datetimes"""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class EventAttendee:
    email: Optional[str]
    is_self: bool = False
    is_resource: bool = False
    organizer: bool = False


@dataclass
class ExternalEvent:
    """The subset of a Google Calendar event the scheduler cares about"""

    id: str
    status: str = "confirmed"
    summary: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day_start: Optional[date] = None
    updated: Optional[datetime] = None
    transparency: str = "opaque"
    attendees: list[EventAttendee] = field(default_factory=list)
    private_properties: dict[str, str] = field(default_factory=dict)
    hangout_link: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def is_all_day(self) -> bool:
        return self.start is None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ExternalEvent":
        start = data.get("start") or {}
        end = data.get("end") or {}
        all_day = start.get("date")
        return cls(
            id=data["id"],
            status=data.get("status", "confirmed"),
            summary=data.get("summary"),
            start=parse_rfc3339(start.get("dateTime")),
            end=parse_rfc3339(end.get("dateTime")),
            all_day_start=date.fromisoformat(all_day) if all_day else None,
            updated=parse_rfc3339(data.get("updated")),
            transparency=data.get("transparency", "opaque"),
            attendees=[
                EventAttendee(
                    email=(a.get("email") or "").lower() or None,
                    is_self=bool(a.get("self")),
                    is_resource=bool(a.get("resource")),
                    organizer=bool(a.get("organizer")),
                )
                for a in data.get("attendees", [])
            ],
            private_properties=(data.get("extendedProperties") or {}).get("private") or {},
            hangout_link=data.get("hangoutLink"),
        )


class GoogleCalendarClient:
    """Calendar API calls on behalf of one stored credential"""

    def __init__(
        self,
        credentials,
        owner_id: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.owner_id = owner_id
        self.timeout = timeout if timeout is not None else credentials.timeout
        self.transport = transport if transport is not None else credentials.transport
        self._handle = None

    async def list_events(self, time_min: datetime, time_max: datetime) -> list[ExternalEvent]:
        """All single events in [time_min, time_max), including deleted ones"""
        events = []
        params = {
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "singleEvents": "true",
            "showDeleted": "true",
            "orderBy": "startTime",
            "maxResults": "250",
        }
        while True:
            page = await self._request("GET", "/events", params=params)
            events.extend(ExternalEvent.from_api(item) for item in page.get("items", []))
            token = page.get("nextPageToken")
            if not token:
                break
            params = {**params, "pageToken": token}
        logger.info(f"📅 Listed {len(events)} calendar events for {self.owner_id}")
        return events

    async def create_event(self, body: dict[str, Any], with_conference: bool = False) -> dict[str, Any]:
        params = {"sendUpdates": "none"}
        if with_conference:
            params["conferenceDataVersion"] = "1"
        event = await self._request("POST", "/events", params=params, json=body)
        logger.info(f"✅ Google Calendar event created: {event.get('id')}")
        return event

    async def update_event(self, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        event = await self._request("PATCH", f"/events/{event_id}", json=body)
        logger.info(f"✅ Google Calendar event updated: {event_id}")
        return event

    async def delete_event(self, event_id: str) -> None:
        await self._request("DELETE", f"/events/{event_id}", allow_missing=True)
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

    async def _request(self, method: str, path: str, allow_missing: bool = False, **kwargs) -> dict[str, Any]:
        last_error = None
        for attempt in (1, 2):
            if self._handle is None or attempt == 2:
                # CredentialError from here is terminal and propagates untouched
                self._handle = await self.credentials.get_access_handle(self.owner_id, force_refresh=attempt == 2)
            url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(self._handle.calendar_id, safe='@')}{path}"
            try:
                async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                    response = await client.request(
                        method, url, headers={"Authorization": f"Bearer {self._handle.access_token}"}, **kwargs
                    )
            except httpx.TimeoutException:
                last_error = f"timed out after {self.timeout}s"
                logger.warning(f"⚠️ {method} {path} {last_error} (attempt {attempt})")
                continue
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                logger.warning(f"⚠️ {method} {path} {last_error} (attempt {attempt})")
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"⚠️ {method} {path} returned {response.status_code} (attempt {attempt})")
                continue
            if allow_missing and response.status_code in (404, 410):
                return {}
            if response.status_code >= 400:
                logger.error(f"❌ {method} {path} failed: {response.status_code} {response.text}")
                raise ExternalServiceError(f"Calendar API {method} {path} failed with HTTP {response.status_code}")
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        logger.error(f"❌ {method} {path} failed after retry: {last_error}")
        raise ExternalServiceError(f"Calendar API {method} {path} failed after retry: {last_error}")
