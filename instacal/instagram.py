"""
Instagram webhook helpers: subscription check, message normalization and
quick reply handling.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from instacal.calendar_commit import CalendarCommitEngine, CommitResult
from instacal.event_extractor import DEFAULT_DURATION, parse_timestamp
from instacal.errors import ValidationError
from instacal.stores import DraftStore

logger = logging.getLogger(__name__)

SHARED_POST_MARKER = 'instagram.com/p/'
URL_PATTERN = re.compile(r'https://[^\s]+')

QUICK_REPLY_SAVE = 'SAVE'
QUICK_REPLY_CANCEL = 'CANCEL'
QUICK_REPLY_CONFIRM_DATE = 'CONFIRM_DATE:'


@dataclass
class NormalizedMessage:
    """Instagram message reduced to what the pipeline needs"""
    sender_id: str
    page_id: str
    timestamp: int
    message_id: str
    type: str = 'text'
    text: Optional[str] = None
    media_url: Optional[str] = None
    quick_reply_payload: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_media(self) -> bool:
        return bool(self.media_url) and self.type in ('image', 'share_preview')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sender_id': self.sender_id,
            'page_id': self.page_id,
            'timestamp': self.timestamp,
            'message': {
                'id': self.message_id,
                'type': self.type,
                'text': self.text,
                'media_url': self.media_url,
                'quick_reply_payload': self.quick_reply_payload
            }
        }


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str],
                        expected_token: Optional[str]) -> Optional[str]:
    """Return the challenge to echo back when the subscription request is genuine"""
    if mode == 'subscribe' and expected_token and token == expected_token:
        return challenge
    return None


def normalize_message(msg: Dict[str, Any], page_id: str) -> NormalizedMessage:
    """Normalize one ``messaging`` entry of an Instagram webhook"""
    message = msg.get('message') or {}
    postback = msg.get('postback') or {}
    sender_id = str(msg['sender']['id'])
    timestamp = msg.get('timestamp', 0)

    normalized = NormalizedMessage(
        sender_id=sender_id,
        page_id=str(page_id),
        timestamp=timestamp,
        message_id=message.get('mid') or f"{timestamp}_{sender_id}",
        text=message.get('text'),
        quick_reply_payload=(message.get('quick_reply') or {}).get('payload') or postback.get('payload'),
        raw=msg
    )

    # Handle attachments
    attachments = message.get('attachments') or []
    if attachments:
        attachment = attachments[0]
        url = (attachment.get('payload') or {}).get('url')
        if attachment.get('type') == 'image' and url:
            normalized.type = 'image'
            normalized.media_url = url

    # Shared posts arrive as text carrying the post link
    if normalized.text and SHARED_POST_MARKER in normalized.text:
        normalized.type = 'share_preview'
        match = URL_PATTERN.search(normalized.text)
        if match:
            normalized.media_url = match.group(0)

    return normalized


class QuickReplyHandler:
    """Applies a user's quick reply to their latest pending draft"""

    def __init__(self, draft_store: DraftStore, commit_engine: CalendarCommitEngine):
        self.draft_store = draft_store
        self.commit_engine = commit_engine

    def handle(self, user_id: int, payload: str) -> Optional[CommitResult]:
        logger.info(f"Handling quick reply for user {user_id}: {payload}")

        if payload == QUICK_REPLY_SAVE:
            pending = self.draft_store.query_latest_pending(user_id)
            # The user approved it, so the confirmation flag does not matter
            return self.commit_engine.commit(user_id, pending.id if pending else None)

        if payload == QUICK_REPLY_CANCEL:
            pending = self._require_pending(user_id)
            self.draft_store.delete(pending.id)
            logger.info(f"Cancelled draft {pending.id}")
            return None

        if payload.startswith(QUICK_REPLY_CONFIRM_DATE):
            date_text = payload[len(QUICK_REPLY_CONFIRM_DATE):].strip()
            parsed = parse_timestamp(date_text)
            if parsed is None:
                raise ValidationError(f"Could not understand date: {date_text}")
            pending = self._require_pending(user_id)
            start = parsed[0]
            self.draft_store.update(pending.id, start_dt=start, start_raw=None, end_dt=start + DEFAULT_DURATION)
            logger.info(f"Set start of draft {pending.id} to {start}")
            return None

        logger.warning(f"Ignoring unknown quick reply payload: {payload}")
        return None

    def _require_pending(self, user_id: int):
        pending = self.draft_store.query_latest_pending(user_id)
        if pending is None:
            raise ValidationError("No pending draft event found")
        return pending
