"""
Tests for the message-to-draft pipeline
"""

import unittest
from unittest import mock

from instacal.app import build_services
from instacal.errors import PersistenceError, TransientIOError
from instacal.ingestion import IngestionState
from instacal.models import CommittedEvent, DraftEvent, Message, db
from tests import DatabaseTestCase


class TestIngestionOrchestrator(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.orchestrator = build_services().orchestrator
        self.user_id = self.make_user()
        self.message_id = self.make_message(self.user_id)

    def test_confident_flyer_is_committed(self):
        result = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/flyer.jpg')

        self.assertEqual(result.state, IngestionState.AUTO_COMMIT_TRIGGERED)
        self.assertFalse(result.needs_confirmation)
        self.assertEqual(result.confidence, 1.0)
        self.assertEqual(result.commit.draft_event_id, result.draft_id)
        self.assertEqual(self.ocr.urls, ['https://cdn.example.com/flyer.jpg'])

        draft = db.session.get(DraftEvent, result.draft_id)
        self.assertEqual(draft.title, 'CLUB INFO SESSION')
        self.assertEqual(draft.location, 'Student Center Room 205')
        self.assertEqual(draft.ocr_text, self.ocr.text)
        self.assertTrue(db.session.get(Message, self.message_id).processed)

        self.assertEqual(len(self.calendar.created), 1)
        self.assertEqual(self.calendar.created[0]['start']['dateTime'], '2024-09-15T19:00:00Z')
        self.assertEqual(CommittedEvent.query.count(), 1)

    def test_uncertain_flyer_waits_for_user(self):
        self.ocr.text = "hello there"
        notifier = mock.Mock()
        self.orchestrator.notifier = notifier

        result = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/a.jpg')

        self.assertEqual(result.state, IngestionState.PENDING_CONFIRMATION)
        self.assertTrue(result.needs_confirmation)
        self.assertIsNone(result.commit)
        self.assertEqual(self.calendar.created, [])
        notifier.assert_called_once()
        self.assertEqual(notifier.call_args.args[:2], (self.user_id, result.draft_id))

        draft = db.session.get(DraftEvent, result.draft_id)
        self.assertTrue(draft.needs_confirmation)
        self.assertIsNone(draft.start_dt)

    def test_unparsed_start_is_kept_raw(self):
        self.ocr.text = "Big Planning Meeting\nWhen: to be announced"
        self.orchestrator.notifier = mock.Mock()

        result = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/b.jpg')

        draft = db.session.get(DraftEvent, result.draft_id)
        self.assertIsNone(draft.start_dt)
        self.assertEqual(draft.start_raw, 'to be announced')
        self.assertEqual(draft.to_dict()['start_dt'], 'to be announced')

    def test_unparsed_start_waits_for_date_from_user(self):
        """Confident enough for the policy, but the calendar needs a real date first"""
        self.ocr.text = "Big Planning Meeting\nWhen: to be announced"
        notifier = mock.Mock()
        self.orchestrator.notifier = notifier

        result = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/b.jpg')

        self.assertAlmostEqual(result.confidence, 0.8)
        self.assertEqual(result.state, IngestionState.PENDING_CONFIRMATION)
        self.assertTrue(result.needs_confirmation)
        self.assertIsNone(result.commit)
        notifier.assert_called_once()
        self.assertEqual(self.calendar.tokens, [])
        self.assertTrue(db.session.get(DraftEvent, result.draft_id).needs_confirmation)

        quick_replies = build_services().quick_replies
        quick_replies.handle(self.user_id, 'CONFIRM_DATE:2024-10-01T18:00:00Z')
        commit = quick_replies.handle(self.user_id, 'SAVE')

        self.assertEqual(commit.draft_event_id, result.draft_id)
        self.assertEqual(self.calendar.created[0]['start']['dateTime'], '2024-10-01T18:00:00Z')
        self.assertEqual(self.calendar.created[0]['end']['dateTime'], '2024-10-01T20:00:00Z')

    def test_text_message_is_extracted_without_ocr(self):
        message_id = self.make_message(self.user_id, media_url=None, platform_msg_id='mid-text')

        result = self.orchestrator.process_text(self.user_id, message_id, self.ocr.text)

        self.assertEqual(self.ocr.urls, [])
        self.assertEqual(result.state, IngestionState.AUTO_COMMIT_TRIGGERED)
        self.assertEqual(self.calendar.created[0]['summary'], 'CLUB INFO SESSION')
        self.assertEqual(db.session.get(DraftEvent, result.draft_id).ocr_text, self.ocr.text)
        self.assertTrue(db.session.get(Message, message_id).processed)

    def test_chatty_text_message_waits_for_user(self):
        message_id = self.make_message(self.user_id, media_url=None, platform_msg_id='mid-chat')
        self.orchestrator.notifier = mock.Mock()

        result = self.orchestrator.process_text(self.user_id, message_id, "hello there")

        self.assertEqual(result.state, IngestionState.PENDING_CONFIRMATION)
        self.assertEqual(self.calendar.created, [])

    def test_text_message_is_processed_once(self):
        message_id = self.make_message(self.user_id, media_url=None, platform_msg_id='mid-text')

        first = self.orchestrator.process_text(self.user_id, message_id, self.ocr.text)
        second = self.orchestrator.process_text(self.user_id, message_id, self.ocr.text)

        self.assertTrue(second.duplicate)
        self.assertEqual(second.draft_id, first.draft_id)
        self.assertEqual(len(self.calendar.created), 1)

    def test_ocr_failure_leaves_message_unprocessed(self):
        self.ocr.error = TransientIOError('Failed to download image: 404')

        with self.assertRaises(TransientIOError):
            self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/gone.jpg')

        self.assertEqual(DraftEvent.query.count(), 0)
        self.assertFalse(db.session.get(Message, self.message_id).processed)

    def test_draft_store_failure_propagates(self):
        with mock.patch('instacal.stores.DraftStore.insert', side_effect=PersistenceError('Database error')):
            with self.assertRaises(PersistenceError):
                self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/flyer.jpg')

        self.assertFalse(db.session.get(Message, self.message_id).processed)
        self.assertEqual(self.calendar.created, [])

    def test_same_message_is_processed_once(self):
        first = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/flyer.jpg')
        second = self.orchestrator.process(self.user_id, self.message_id, 'https://cdn.example.com/flyer.jpg')

        self.assertTrue(second.duplicate)
        self.assertEqual(second.draft_id, first.draft_id)
        self.assertEqual(len(self.ocr.urls), 1)
        self.assertEqual(len(self.calendar.created), 1)

    def test_result_payload(self):
        payload = self.orchestrator.process(self.user_id, self.message_id,
                                            'https://cdn.example.com/flyer.jpg').to_dict()

        self.assertTrue(payload['success'])
        self.assertEqual(payload['state'], 'auto_commit_triggered')
        self.assertFalse(payload['needsConfirmation'])
        self.assertEqual(payload['commit']['eventId'], 'gcal-1')


if __name__ == '__main__':
    unittest.main()
