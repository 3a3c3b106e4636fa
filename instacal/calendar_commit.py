#!/usr/bin/env python3
"""
Calendar Commit Engine

Sends a draft event to Google Calendar and records what was sent and what
came back. Once Google has created the event the commit counts as a
success: failures while recording it afterwards are logged, not raised.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from instacal.calendar_service import CalendarEventBuilder, GoogleCalendarService
from instacal.credentials import GoogleCredentialProvider
from instacal.errors import PersistenceError, ValidationError
from instacal.models import DraftEvent, isoformat_utc
from instacal.stores import CommittedEventStore, DraftStore

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    """Outcome of a commit"""
    event_id: str
    event_link: Optional[str]
    title: Optional[str]
    start_time: Optional[str]
    draft_event_id: int
    committed_event_id: Optional[int] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'eventId': self.event_id,
            'eventLink': self.event_link,
            'title': self.title,
            'startTime': self.start_time,
            'draftEventId': self.draft_event_id,
            'committedEventId': self.committed_event_id,
            'duplicate': self.duplicate
        }


class CalendarCommitEngine:
    """Creates Google Calendar events from drafts"""

    def __init__(self, draft_store: DraftStore, committed_store: CommittedEventStore,
                 credential_provider: GoogleCredentialProvider,
                 calendar_factory: Callable[[str], GoogleCalendarService] = GoogleCalendarService,
                 calendar_id: str = 'primary'):
        self.draft_store = draft_store
        self.committed_store = committed_store
        self.credential_provider = credential_provider
        self.calendar_factory = calendar_factory
        self.calendar_id = calendar_id

    def _select_draft(self, user_id: int, draft_event_id: Optional[int]) -> DraftEvent:
        if draft_event_id is not None:
            draft = self.draft_store.get(draft_event_id)
            if draft is not None and draft.user_id != user_id:
                draft = None
        else:
            draft = self.draft_store.query_latest_eligible(user_id)

        if draft is None:
            raise ValidationError("No draft event found")
        if not draft.has_start:
            raise ValidationError("Event start time is required")
        return draft

    def commit(self, user_id: int, draft_event_id: Optional[int] = None) -> CommitResult:
        """Create the calendar event for a draft; the latest auto-eligible draft when no id is given"""
        draft = self._select_draft(user_id, draft_event_id)
        start_time = isoformat_utc(draft.start_dt) if draft.start_dt else draft.start_raw

        existing = self.committed_store.get_by_draft(draft.id)
        if existing is not None:
            logger.info(f"Draft {draft.id} already committed as {existing.google_event_id}, skipping")
            response = existing.response_payload or {}
            return CommitResult(
                event_id=existing.google_event_id,
                event_link=response.get('htmlLink') if isinstance(response, dict) else None,
                title=draft.title,
                start_time=start_time,
                draft_event_id=draft.id,
                committed_event_id=existing.id,
                duplicate=True
            )

        event_body = CalendarEventBuilder.build_draft_event(draft)
        access_token = self.credential_provider.get_valid_access_token(user_id)

        logger.info(f"Creating Google Calendar event: {event_body}")
        calendar_response = self.calendar_factory(access_token).create_event(event_body)

        committed_event_id = None
        try:
            committed_event_id = self.committed_store.insert(
                user_id=user_id,
                draft_event_id=draft.id,
                google_event_id=calendar_response['id'],
                calendar_id=self.calendar_id,
                request_payload=event_body,
                response_payload=calendar_response
            )
        except PersistenceError as e:
            # The event exists in the calendar already
            logger.error(f"Error saving event record for draft {draft.id}: {e}")

        try:
            if draft.needs_confirmation:
                self.draft_store.update(draft.id, needs_confirmation=False)
        except PersistenceError as e:
            logger.error(f"Error clearing confirmation flag on draft {draft.id}: {e}")

        logger.info(f"Successfully created calendar event: {calendar_response.get('htmlLink')}")
        return CommitResult(
            event_id=calendar_response['id'],
            event_link=calendar_response.get('htmlLink'),
            title=draft.title,
            start_time=start_time,
            draft_event_id=draft.id,
            committed_event_id=committed_event_id
        )
