"""
Test configuration and utilities
"""

import itertools
import unittest
import sys
import os
from datetime import datetime

import pytz

# Add project root to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from instacal.app import create_app
from instacal.models import DraftEvent, Message, User, db

FLYER_TEXT = (
    "CLUB INFO SESSION\n"
    "Date: Friday, September 15th, 2024\n"
    "Time: 7:00 PM - 9:00 PM\n"
    "Location: Student Center Room 205\n"
    "Contact: club@university.edu"
)


_message_ids = itertools.count(1)


class FakeCalendar:
    """Stands in for GoogleCalendarService; doubles as its factory"""

    def __init__(self, probe_status=200, error=None):
        self.probe_status = probe_status
        self.error = error
        self.tokens = []
        self.created = []

    def __call__(self, access_token):
        self.tokens.append(access_token)
        return self

    def probe(self):
        return self.probe_status

    def create_event(self, event_body):
        if self.error is not None:
            raise self.error
        self.created.append(event_body)
        event_id = f'gcal-{len(self.created)}'
        return {
            'id': event_id,
            'htmlLink': f'https://www.google.com/calendar/event?eid={event_id}',
            'status': 'confirmed'
        }


class FakeOCR:
    """Returns canned text and counts calls"""

    def __init__(self, text=FLYER_TEXT, error=None):
        self.text = text
        self.error = error
        self.urls = []

    def __call__(self, media_url):
        self.urls.append(media_url)
        if self.error is not None:
            raise self.error
        return self.text


class DatabaseTestCase(unittest.TestCase):
    """Runs each test inside an app context over a fresh in-memory database"""

    def setUp(self):
        self.calendar = FakeCalendar()
        self.ocr = FakeOCR()
        self.refreshed_tokens = []
        self.app = create_app('testing', ocr=self.ocr, calendar_factory=self.calendar,
                              token_refresher=self._refresh)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def _refresh(self, refresh_token):
        self.refreshed_tokens.append(refresh_token)
        return 'refreshed-access-token'

    def make_user(self, access_token='access-token', refresh_token='refresh-token', ig_psid='psid-1'):
        user = User(ig_psid=ig_psid, google_access_token=access_token, google_refresh_token=refresh_token)
        db.session.add(user)
        db.session.commit()
        return user.id

    def make_message(self, user_id, media_url='https://cdn.example.com/flyer.jpg', platform_msg_id='mid-1'):
        message = Message(user_id=user_id, platform_msg_id=platform_msg_id, type='image', media_url=media_url)
        db.session.add(message)
        db.session.commit()
        return message.id

    def make_draft(self, user_id, message_id=None, **fields):
        if message_id is None:
            message_id = self.make_message(user_id, platform_msg_id=f'mid-draft-{next(_message_ids)}')
        values = {
            'title': 'CLUB INFO SESSION',
            'start_dt': datetime(2024, 9, 15, 19, 0, tzinfo=pytz.UTC),
            'confidence': 1.0,
            'needs_confirmation': False,
            'ocr_text': FLYER_TEXT
        }
        values.update(fields)
        draft = DraftEvent(user_id=user_id, source_message_id=message_id, **values)
        db.session.add(draft)
        db.session.commit()
        return draft.id


def run_tests():
    """Run all tests"""
    loader = unittest.TestLoader()
    start_dir = os.path.dirname(__file__)
    suite = loader.discover(start_dir, pattern='test_*.py')

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return result.wasSuccessful()


if __name__ == '__main__':
    success = run_tests()
    sys.exit(0 if success else 1)
