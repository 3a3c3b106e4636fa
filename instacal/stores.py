"""
Store adapters over the SQLAlchemy session.

Each store is handed the session it works with; nothing here reaches for a
global handle. Database failures roll the session back and surface as
PersistenceError.
"""

import logging
from functools import wraps
from typing import Any, Dict, List, Optional

from sqlalchemy import exists
from sqlalchemy.exc import SQLAlchemyError

from instacal.errors import PersistenceError
from instacal.models import CommittedEvent, DraftEvent, Message, User, WebhookLog, utcnow

logger = logging.getLogger(__name__)


def persistent(method):
    """Translate SQLAlchemy failures into PersistenceError after a rollback"""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"{type(self).__name__}.{method.__name__} failed: {e}")
            raise PersistenceError(f"Database error: {e}") from e
    return wrapper


class _Store:
    def __init__(self, session):
        self.session = session


class DraftStore(_Store):
    """Draft events extracted from messages"""

    @persistent
    def insert(self, **fields: Any) -> int:
        draft = DraftEvent(**fields)
        self.session.add(draft)
        self.session.commit()
        return draft.id

    @persistent
    def get(self, draft_id: int) -> Optional[DraftEvent]:
        return self.session.get(DraftEvent, draft_id)

    @persistent
    def get_by_message(self, message_id: int) -> Optional[DraftEvent]:
        return self.session.query(DraftEvent).filter_by(source_message_id=message_id).first()

    @persistent
    def update(self, draft_id: int, **fields: Any) -> Optional[DraftEvent]:
        draft = self.session.get(DraftEvent, draft_id)
        if draft is None:
            return None
        for key, value in fields.items():
            setattr(draft, key, value)
        self.session.commit()
        return draft

    @persistent
    def delete(self, draft_id: int) -> bool:
        draft = self.session.get(DraftEvent, draft_id)
        if draft is None:
            return False
        self.session.delete(draft)
        self.session.commit()
        return True

    @persistent
    def query_latest_eligible(self, user_id: int) -> Optional[DraftEvent]:
        """Newest draft cleared for commit that has no calendar event yet"""
        already_committed = exists().where(CommittedEvent.draft_event_id == DraftEvent.id)
        return (self.session.query(DraftEvent)
                .filter(DraftEvent.user_id == user_id,
                        DraftEvent.needs_confirmation.is_(False),
                        ~already_committed)
                .order_by(DraftEvent.created_at.desc(), DraftEvent.id.desc())
                .first())

    @persistent
    def query_latest_pending(self, user_id: int) -> Optional[DraftEvent]:
        """Newest draft still waiting for the user"""
        return (self.session.query(DraftEvent)
                .filter(DraftEvent.user_id == user_id,
                        DraftEvent.needs_confirmation.is_(True))
                .order_by(DraftEvent.created_at.desc(), DraftEvent.id.desc())
                .first())

    @persistent
    def list_for_user(self, user_id: int) -> List[DraftEvent]:
        return (self.session.query(DraftEvent)
                .filter(DraftEvent.user_id == user_id)
                .order_by(DraftEvent.created_at.desc(), DraftEvent.id.desc())
                .all())


class CommittedEventStore(_Store):
    """Calendar events that were created at the provider"""

    @persistent
    def insert(self, **fields: Any) -> int:
        record = CommittedEvent(**fields)
        self.session.add(record)
        self.session.commit()
        return record.id

    @persistent
    def get_by_draft(self, draft_id: int) -> Optional[CommittedEvent]:
        return self.session.query(CommittedEvent).filter_by(draft_event_id=draft_id).first()


class MessageStore(_Store):
    """Normalized Instagram messages"""

    @persistent
    def insert(self, **fields: Any) -> int:
        message = Message(**fields)
        self.session.add(message)
        self.session.commit()
        return message.id

    @persistent
    def get(self, message_id: int) -> Optional[Message]:
        return self.session.get(Message, message_id)

    @persistent
    def get_by_platform_id(self, user_id: int, platform_msg_id: str) -> Optional[Message]:
        return (self.session.query(Message)
                .filter_by(user_id=user_id, platform_msg_id=platform_msg_id)
                .order_by(Message.id)
                .first())

    @persistent
    def mark_processed(self, message_id: int) -> None:
        message = self.session.get(Message, message_id)
        if message is None:
            raise PersistenceError(f"Message {message_id} not found")
        message.processed = True
        self.session.commit()


class UserStore(_Store):
    """Users and their Google tokens"""

    @persistent
    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    @persistent
    def upsert_by_psid(self, ig_psid: str) -> int:
        user = self.session.query(User).filter_by(ig_psid=ig_psid).first()
        now = utcnow()
        if user is None:
            user = User(ig_psid=ig_psid, first_seen=now, last_seen=now)
            self.session.add(user)
        else:
            user.last_seen = now
        self.session.commit()
        return user.id

    @persistent
    def update_access_token(self, user_id: int, access_token: str) -> None:
        user = self.session.get(User, user_id)
        if user is None:
            raise PersistenceError(f"User {user_id} not found")
        user.google_access_token = access_token
        self.session.commit()

    @persistent
    def store_google_tokens(self, user_id: int, access_token: str, refresh_token: Optional[str]) -> None:
        user = self.session.get(User, user_id)
        if user is None:
            raise PersistenceError(f"User {user_id} not found")
        user.google_access_token = access_token
        # Google only returns a refresh token on the first consent
        if refresh_token:
            user.google_refresh_token = refresh_token
        self.session.commit()


class WebhookLogStore(_Store):
    """Raw webhook payloads"""

    @persistent
    def insert(self, source: str, event_type: str, payload: Dict[str, Any]) -> int:
        entry = WebhookLog(source=source, event_type=event_type, payload=payload)
        self.session.add(entry)
        self.session.commit()
        return entry.id

    @persistent
    def finish(self, log_id: int, error_message: Optional[str] = None) -> None:
        entry = self.session.get(WebhookLog, log_id)
        if entry is None:
            return
        entry.processed = True
        entry.error_message = error_message
        self.session.commit()
