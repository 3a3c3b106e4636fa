#!/usr/bin/env python3
"""
Event Text Extractor

Turns the raw text read from an event flyer into a candidate event with a
confidence score. Extraction is a cascade of independent regex matchers
evaluated in a fixed priority order; every field that is found adds a fixed
amount to a base confidence of 0.5.

The extractor is pure: no I/O, no clock, and it never raises.
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

import pytz
from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
TITLE_BONUS = 0.2
PARSED_START_BONUS = 0.3
RAW_START_BONUS = 0.1
TIME_BONUS = 0.2
LOCATION_BONUS = 0.2
NOTES_BONUS = 0.1

DEFAULT_DURATION = timedelta(hours=2)
TITLE_SCAN_LINES = 3
TITLE_MIN_LENGTH = 5
TITLE_STOP_WORDS = ('date', 'time', 'location')
NOTE_MARKERS = ('@', 'http', 'contact')

_MONTHS = 'january|february|march|april|may|june|july|august|september|october|november|december'
_WEEKDAYS = 'monday|tuesday|wednesday|thursday|friday|saturday|sunday'

# Two defaults that differ in every date and time field: a value parsed
# against both only agrees on the fields the text actually names.
_PROBE_DEFAULT_A = datetime(2000, 1, 1, 0, 0)
_PROBE_DEFAULT_B = datetime(2001, 2, 2, 1, 1)


@dataclass
class Matcher:
    """A named regex; ``group`` selects the part of the match that is kept"""
    name: str
    pattern: re.Pattern
    group: int = 0

    def search(self, line: str) -> Optional[str]:
        match = self.pattern.search(line)
        if not match:
            return None
        return match.group(self.group)


DATE_MATCHERS: List[Matcher] = [
    Matcher('labeled_date', re.compile(r'(?:date|when):\s*(.+)', re.IGNORECASE), 1),
    Matcher('labeled_time', re.compile(r'time:\s*(.+)', re.IGNORECASE), 1),
    Matcher('weekday', re.compile(rf'\b(?:{_WEEKDAYS})[,\s]+[^\n]+', re.IGNORECASE)),
    Matcher('numeric_date', re.compile(r'\b\d{1,2}/\d{1,2}/\d{4}\b')),
    Matcher('clock_time', re.compile(r'\b\d{1,2}:\d{2}\s*(?:am|pm)\b', re.IGNORECASE)),
    Matcher('month_day_year', re.compile(rf'\b(?:{_MONTHS})\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b',
                                         re.IGNORECASE)),
]

TIME_OF_DAY = re.compile(r'\b(\d{1,2}:\d{2}\s*(?:am|pm))\b', re.IGNORECASE)

LOCATION_MATCHERS: List[Matcher] = [
    Matcher('labeled_location', re.compile(r'(?:location|where|room|address):\s*([^,\n]+)', re.IGNORECASE), 1),
    Matcher('at_venue', re.compile(r'(?:\bat|@)\s+([^,\n]+(?:room|center|building|hall|auditorium)[^,\n]*)',
                                   re.IGNORECASE), 1),
    Matcher('room_number', re.compile(r'(room\s+\d+[^,\n]*)', re.IGNORECASE), 1),
    Matcher('venue_word', re.compile(r'([^,\n]*(?:center|building|hall|auditorium|library)[^,\n]*)',
                                     re.IGNORECASE), 1),
]


@dataclass
class CandidateEvent:
    """Structured event read from flyer text"""
    title: Optional[str] = None
    start: Optional[Union[datetime, str]] = None  # UTC datetime, or the raw text when unparsed
    end: Optional[datetime] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    confidence: float = BASE_CONFIDENCE

    @property
    def start_resolved(self) -> bool:
        return isinstance(self.start, datetime)


def parse_timestamp(text: str) -> Optional[Tuple[datetime, bool]]:
    """
    Parse text naming a full calendar date.

    Returns the UTC timestamp and whether a time of day was present, or None
    when the text does not name a year, month and day.
    """
    try:
        first = dateutil_parser.parse(text, default=_PROBE_DEFAULT_A)
        second = dateutil_parser.parse(text, default=_PROBE_DEFAULT_B)
    except (ValueError, OverflowError):
        return None

    if first.date() != second.date():
        return None

    has_time = first.time() == second.time()
    return _to_utc(first), has_time


def _to_utc(value: datetime) -> datetime:
    # Wall-clock times without a zone are read as UTC
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def _merge_time(start: Union[datetime, str], time_text: str) -> Optional[datetime]:
    if isinstance(start, datetime):
        try:
            merged = dateutil_parser.parse(time_text, default=start.replace(tzinfo=None))
        except (ValueError, OverflowError):
            return None
        return _to_utc(merged)

    parsed = parse_timestamp(f"{start} {time_text}")
    if parsed and parsed[1]:
        return parsed[0]
    return None


def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split('\n') if line.strip()]


def _extract_title(lines: List[str]) -> Optional[str]:
    for line in lines[:TITLE_SCAN_LINES]:
        lowered = line.lower()
        if len(line) > TITLE_MIN_LENGTH and not any(word in lowered for word in TITLE_STOP_WORDS):
            return line
    return None


def _first_date_match(lines: List[str]) -> Optional[Tuple[str, str]]:
    for line in lines:
        for matcher in DATE_MATCHERS:
            matched = matcher.search(line)
            if matched:
                return matcher.name, matched.strip()
    return None


def _first_time_of_day(lines: List[str]) -> Optional[str]:
    for line in lines:
        match = TIME_OF_DAY.search(line)
        if match:
            return match.group(1)
    return None


def _extract_location(lines: List[str]) -> Optional[str]:
    for line in lines:
        for matcher in LOCATION_MATCHERS:
            matched = matcher.search(line)
            if matched and matched.strip():
                return matched.strip()
    return None


def _extract_notes(lines: List[str]) -> Optional[str]:
    note_lines = [line for line in lines if any(marker in line for marker in NOTE_MARKERS)]
    if not note_lines:
        return None
    return '\n'.join(note_lines)


def extract(text: str) -> CandidateEvent:
    """Extract a candidate event from OCR text"""
    lines = _split_lines(text or '')
    event = CandidateEvent()
    confidence = BASE_CONFIDENCE

    event.title = _extract_title(lines)
    if event.title:
        confidence += TITLE_BONUS

    date_only = False
    date_match = _first_date_match(lines)
    if date_match:
        matcher_name, matched_text = date_match
        parsed = parse_timestamp(matched_text)
        if parsed:
            event.start, has_time = parsed
            date_only = not has_time
            confidence += PARSED_START_BONUS
        else:
            event.start = matched_text
            confidence += RAW_START_BONUS
        logger.debug(f"Date seed from {matcher_name}: {matched_text!r} -> {event.start!r}")

    time_text = _first_time_of_day(lines)
    if time_text:
        confidence += TIME_BONUS
        if event.start is not None and (date_only or not event.start_resolved):
            merged = _merge_time(event.start, time_text)
            if merged is not None:
                event.start = merged
            else:
                logger.debug(f"Could not merge time {time_text!r} into {event.start!r}")

    event.location = _extract_location(lines)
    if event.location:
        confidence += LOCATION_BONUS

    event.notes = _extract_notes(lines)
    if event.notes:
        confidence += NOTES_BONUS

    if event.start_resolved:
        event.end = event.start + DEFAULT_DURATION

    # Round so additive float error never lands just below a threshold
    event.confidence = round(min(confidence, 1.0), 2)
    return event
