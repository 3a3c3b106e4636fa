"""
Instagram DM to Google Calendar: event extraction and commit pipeline
"""

from .event_extractor import CandidateEvent, extract
from .confidence import CONFIRMATION_THRESHOLD, needs_confirmation
from .errors import (
    CredentialError,
    InstacalError,
    PersistenceError,
    ProviderError,
    TransientIOError,
    ValidationError,
)

__version__ = '1.0.0'

__all__ = [
    'CandidateEvent', 'extract', 'CONFIRMATION_THRESHOLD', 'needs_confirmation',
    'InstacalError', 'ValidationError', 'CredentialError', 'ProviderError',
    'TransientIOError', 'PersistenceError'
]
