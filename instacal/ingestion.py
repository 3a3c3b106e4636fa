#!/usr/bin/env python3
"""
Ingestion Orchestrator

Runs one media message through OCR, extraction and the confidence policy,
persists the resulting draft and either commits it right away or leaves it
waiting for the user. Text-only messages skip the OCR step.

    RECEIVED -> OCR_DONE -> EXTRACTED -> DRAFT_PERSISTED
             -> PENDING_CONFIRMATION | AUTO_COMMIT_TRIGGERED

A draft whose start is only raw text is held for confirmation even when the
policy would let it through.

A failure before the draft is stored leaves the message unprocessed so it
can be picked up again.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from instacal.calendar_commit import CalendarCommitEngine, CommitResult
from instacal.confidence import needs_confirmation
from instacal.event_extractor import CandidateEvent, extract
from instacal.models import isoformat_utc
from instacal.stores import DraftStore, MessageStore

logger = logging.getLogger(__name__)


class IngestionState(Enum):
    RECEIVED = 'received'
    OCR_DONE = 'ocr_done'
    EXTRACTED = 'extracted'
    DRAFT_PERSISTED = 'draft_persisted'
    PENDING_CONFIRMATION = 'pending_confirmation'
    AUTO_COMMIT_TRIGGERED = 'auto_commit_triggered'


def _advance(message_id: int, current: Optional[IngestionState], new: IngestionState) -> IngestionState:
    logger.debug(f"Message {message_id}: {current.value if current else '-'} -> {new.value}")
    return new


@dataclass
class IngestionResult:
    draft_id: int
    confidence: float
    needs_confirmation: bool
    state: IngestionState
    commit: Optional[CommitResult] = None
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'draftId': self.draft_id,
            'confidence': self.confidence,
            'needsConfirmation': self.needs_confirmation,
            'state': self.state.value,
            'duplicate': self.duplicate,
            'commit': self.commit.to_dict() if self.commit else None
        }


class LoggingConfirmationNotifier:
    """Logs the quick reply a user would get for a draft that needs review"""

    def __call__(self, user_id: int, draft_id: int, candidate: CandidateEvent) -> None:
        if not candidate.start_resolved:
            logger.info(f"Would ask user {user_id} for date/time of draft {draft_id} (read: {candidate.start!r})")
        else:
            start = isoformat_utc(candidate.start)
            logger.info(f"Would ask user {user_id} to confirm draft {draft_id}: {candidate.title} on {start}")


class IngestionOrchestrator:
    """Message-to-draft pipeline"""

    def __init__(self, ocr: Callable[[str], str], draft_store: DraftStore, message_store: MessageStore,
                 commit_engine: CalendarCommitEngine,
                 notifier: Optional[Callable[[int, int, CandidateEvent], None]] = None):
        self.ocr = ocr
        self.draft_store = draft_store
        self.message_store = message_store
        self.commit_engine = commit_engine
        self.notifier = notifier or LoggingConfirmationNotifier()

    def _existing_draft(self, message_id: int) -> Optional[IngestionResult]:
        existing = self.draft_store.get_by_message(message_id)
        if existing is None:
            return None

        logger.info(f"Message {message_id} already has draft {existing.id}")
        message = self.message_store.get(message_id)
        if message is not None and not message.processed:
            self.message_store.mark_processed(message_id)
        return IngestionResult(
            draft_id=existing.id,
            confidence=existing.confidence,
            needs_confirmation=existing.needs_confirmation,
            state=IngestionState.DRAFT_PERSISTED,
            duplicate=True
        )

    def process(self, user_id: int, message_id: int, media_url: str) -> IngestionResult:
        """Turn a media message into a draft event"""
        logger.info(f"Processing OCR for user {user_id}, message {message_id}")
        state = _advance(message_id, None, IngestionState.RECEIVED)

        existing = self._existing_draft(message_id)
        if existing is not None:
            return existing

        ocr_text = self.ocr(media_url)
        state = _advance(message_id, state, IngestionState.OCR_DONE)
        logger.debug(f"OCR result: {ocr_text}")

        return self._ingest_text(user_id, message_id, ocr_text, state)

    def process_text(self, user_id: int, message_id: int, text: str) -> IngestionResult:
        """Turn a text-only message into a draft event; no OCR involved"""
        logger.info(f"Processing text for user {user_id}, message {message_id}")
        state = _advance(message_id, None, IngestionState.RECEIVED)

        existing = self._existing_draft(message_id)
        if existing is not None:
            return existing

        return self._ingest_text(user_id, message_id, text, state)

    def _ingest_text(self, user_id: int, message_id: int, text: str, state: IngestionState) -> IngestionResult:
        candidate = extract(text)
        confirm = needs_confirmation(candidate)
        state = _advance(message_id, state, IngestionState.EXTRACTED)
        logger.info(f"Parsed event data: {candidate} (needs_confirmation={confirm})")

        if not confirm and not candidate.start_resolved:
            # A raw start cannot be sent to the calendar; the user has to supply the date
            logger.info(f"Start {candidate.start!r} could not be resolved, holding draft for confirmation")
            confirm = True

        draft_id = self.draft_store.insert(
            user_id=user_id,
            source_message_id=message_id,
            title=candidate.title,
            start_dt=candidate.start if candidate.start_resolved else None,
            start_raw=None if candidate.start_resolved else candidate.start,
            end_dt=candidate.end,
            location=candidate.location,
            notes=candidate.notes,
            confidence=candidate.confidence,
            needs_confirmation=confirm,
            ocr_text=text
        )
        self.message_store.mark_processed(message_id)
        state = _advance(message_id, state, IngestionState.DRAFT_PERSISTED)
        logger.info(f"Created draft event: {draft_id}")

        commit = None
        if confirm:
            self.notifier(user_id, draft_id, candidate)
            state = _advance(message_id, state, IngestionState.PENDING_CONFIRMATION)
        else:
            logger.info("Auto-creating event due to high confidence")
            state = _advance(message_id, state, IngestionState.AUTO_COMMIT_TRIGGERED)
            commit = self.commit_engine.commit(user_id)

        return IngestionResult(
            draft_id=draft_id,
            confidence=candidate.confidence,
            needs_confirmation=confirm,
            state=state,
            commit=commit
        )
