import logging
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import quote

import requests

from instacal.errors import ProviderError, TransientIOError, ValidationError
from instacal.models import DraftEvent, JSONValue, isoformat_utc

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = 'https://www.googleapis.com/calendar/v3'
DEFAULT_TIMEZONE = 'UTC'
DEFAULT_DURATION = timedelta(hours=2)
DEFAULT_SUMMARY = 'Event from Instagram'
DESCRIPTION_PREFACE = 'Created from Instagram DM'


class GoogleCalendarService:
    """Calendar API client bound to one access token"""

    def __init__(self, access_token: str, calendar_id: str = 'primary',
                 session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.access_token = access_token
        self.calendar_id = calendar_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {'Authorization': f'Bearer {self.access_token}'}

    def _calendar_url(self) -> str:
        return f"{CALENDAR_API_BASE}/calendars/{quote(self.calendar_id, safe='')}"

    def probe(self) -> int:
        """Read the calendar resource and return the HTTP status"""
        try:
            response = self.session.get(self._calendar_url(), headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientIOError(f"Could not reach Google Calendar: {e}") from e
        return response.status_code

    def create_event(self, event_body: Dict[str, JSONValue]) -> Dict[str, JSONValue]:
        """Create a calendar event and return Google's event resource"""
        try:
            response = self.session.post(
                f'{self._calendar_url()}/events',
                headers=self._headers(),
                json=event_body,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransientIOError(f"Could not reach Google Calendar: {e}") from e

        if not response.ok:
            raise ProviderError(response.status_code, response.text)

        try:
            event = response.json()
        except ValueError as e:
            raise ProviderError(response.status_code, response.text) from e
        if not isinstance(event, dict) or not event.get('id'):
            raise ProviderError(response.status_code, response.text)

        logger.info(f"Created Google Calendar event: {event.get('htmlLink')}")
        return event


class CalendarEventBuilder:
    """Builder for Google Calendar event bodies from draft events"""

    @staticmethod
    def build_draft_event(draft: DraftEvent, timezone: str = DEFAULT_TIMEZONE) -> Dict[str, JSONValue]:
        """Build calendar event for a draft"""
        if draft.start_dt is None:
            if draft.start_raw:
                raise ValidationError(f"Event start time could not be resolved: {draft.start_raw}")
            raise ValidationError("Event start time is required")

        end_dt = draft.end_dt or draft.start_dt + DEFAULT_DURATION

        event = {
            'summary': draft.title or DEFAULT_SUMMARY,
            'description': f"{DESCRIPTION_PREFACE}\n\n{draft.notes or ''}",
            'start': {
                'dateTime': isoformat_utc(draft.start_dt),
                'timeZone': timezone,
            },
            'end': {
                'dateTime': isoformat_utc(end_dt),
                'timeZone': timezone,
            },
            'reminders': {
                'useDefault': True,
            },
        }

        if draft.location:
            event['location'] = draft.location

        return event
