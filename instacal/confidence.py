"""
Decides whether an extracted event can go to the calendar without review.
"""

from instacal.event_extractor import CandidateEvent

CONFIRMATION_THRESHOLD = 0.8


def needs_confirmation(candidate: CandidateEvent) -> bool:
    """True unless confidence reaches the threshold and both title and start were found"""
    if not candidate.title or not candidate.start:
        return True
    return candidate.confidence < CONFIRMATION_THRESHOLD
