from datetime import datetime
from typing import Dict, List, Union

import pytz
from flask_sqlalchemy import SQLAlchemy

# This will be initialized in app.py
db = SQLAlchemy()

# Provider request/response documents are stored as-is; their shape belongs to Google
JSONValue = Union[None, bool, int, float, str, List['JSONValue'], Dict[str, 'JSONValue']]

MESSAGE_TYPES = ('text', 'image', 'share_preview', 'link')


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(value: datetime) -> datetime:
    """Naive values (SQLite drops the zone) are taken as UTC"""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def isoformat_utc(value: datetime) -> str:
    """Format a timestamp as ``YYYY-MM-DDTHH:MM:SSZ``"""
    return as_utc(value).strftime('%Y-%m-%dT%H:%M:%SZ')


class User(db.Model):
    """Instagram users who connected a Google Calendar"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    ig_psid = db.Column(db.String(64), unique=True, index=True)  # Instagram page-scoped id
    ig_username = db.Column(db.String(100))
    google_access_token = db.Column(db.Text)
    google_refresh_token = db.Column(db.Text)
    timezone = db.Column(db.String(50), default='UTC')  # IANA name, stored only
    first_seen = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    messages = db.relationship('Message', backref='user', lazy=True, cascade='all, delete-orphan')
    draft_events = db.relationship('DraftEvent', backref='user', lazy=True, cascade='all, delete-orphan')
    committed_events = db.relationship('CommittedEvent', backref='user', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'ig_psid': self.ig_psid,
            'ig_username': self.ig_username,
            'google_connected': bool(self.google_access_token),
            'timezone': self.timezone,
            'first_seen': isoformat_utc(self.first_seen) if self.first_seen else None,
            'last_seen': isoformat_utc(self.last_seen) if self.last_seen else None,
        }


class Message(db.Model):
    """Normalized Instagram direct messages"""
    __tablename__ = 'messages'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    platform_msg_id = db.Column(db.String(255), nullable=False, index=True)
    type = db.Column(db.Enum(*MESSAGE_TYPES, name='message_type'), nullable=False)
    text = db.Column(db.Text)
    media_url = db.Column(db.Text)  # Ephemeral URL, download immediately
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    raw_json = db.Column(db.JSON)
    processed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'platform_msg_id': self.platform_msg_id,
            'type': self.type,
            'text': self.text,
            'media_url': self.media_url,
            'received_at': isoformat_utc(self.received_at) if self.received_at else None,
            'processed': self.processed
        }


class DraftEvent(db.Model):
    """Events extracted from a message, waiting for automatic or manual commit"""
    __tablename__ = 'draft_events'
    __table_args__ = (
        db.CheckConstraint('confidence >= 0.0 AND confidence <= 1.0', name='ck_draft_events_confidence'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    source_message_id = db.Column(db.Integer, db.ForeignKey('messages.id', ondelete='CASCADE'),
                                  nullable=False, unique=True)
    title = db.Column(db.Text)
    start_dt = db.Column(db.DateTime(timezone=True))
    start_raw = db.Column(db.Text)  # matched date text that could not be parsed
    end_dt = db.Column(db.DateTime(timezone=True))
    location = db.Column(db.Text)
    notes = db.Column(db.Text)
    confidence = db.Column(db.Float, nullable=False, default=0.0)
    needs_confirmation = db.Column(db.Boolean, nullable=False, default=True, index=True)
    ocr_text = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    source_message = db.relationship('Message', lazy=True)

    @property
    def has_start(self) -> bool:
        return self.start_dt is not None or bool(self.start_raw)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'source_message_id': self.source_message_id,
            'title': self.title,
            'start_dt': isoformat_utc(self.start_dt) if self.start_dt else self.start_raw,
            'end_dt': isoformat_utc(self.end_dt) if self.end_dt else None,
            'location': self.location,
            'notes': self.notes,
            'confidence': self.confidence,
            'needs_confirmation': self.needs_confirmation,
            'ocr_text': self.ocr_text,
            'created_at': isoformat_utc(self.created_at) if self.created_at else None,
            'updated_at': isoformat_utc(self.updated_at) if self.updated_at else None
        }


class CommittedEvent(db.Model):
    """Events created in Google Calendar, kept with the exchanged payloads"""
    __tablename__ = 'committed_events'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'google_event_id', name='uq_committed_events_user_google_event'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    # Weak link: the draft may be deleted after commit
    draft_event_id = db.Column(db.Integer, db.ForeignKey('draft_events.id', ondelete='SET NULL'), unique=True)
    google_event_id = db.Column(db.String(255), nullable=False, index=True)
    calendar_id = db.Column(db.String(255), nullable=False, default='primary')
    request_payload = db.Column(db.JSON)
    response_payload = db.Column(db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'draft_event_id': self.draft_event_id,
            'google_event_id': self.google_event_id,
            'calendar_id': self.calendar_id,
            'request_payload': self.request_payload,
            'response_payload': self.response_payload,
            'created_at': isoformat_utc(self.created_at) if self.created_at else None
        }


class WebhookLog(db.Model):
    """Raw webhook deliveries, kept for debugging"""
    __tablename__ = 'webhook_logs'

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(50), nullable=False, index=True)  # 'instagram', 'google', ...
    event_type = db.Column(db.String(100))
    payload = db.Column(db.JSON)
    processed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'source': self.source,
            'event_type': self.event_type,
            'processed': self.processed,
            'error_message': self.error_message,
            'created_at': isoformat_utc(self.created_at) if self.created_at else None
        }
