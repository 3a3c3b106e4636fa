"""
Typed failures raised by the pipeline.

Every error carries a stable ``code``, a human readable ``message`` and the
HTTP status the Flask layer answers with.
"""

from typing import Any, Dict, Optional


class InstacalError(Exception):
    """Base error for the Instagram to Calendar pipeline"""

    code = 'instacal.error'
    status_code = 500

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta = dict(meta or {})

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.message, 'code': self.code}
        if self.meta:
            payload['meta'] = self.meta
        return payload


class ValidationError(InstacalError):
    """A required draft field or request field is missing"""

    code = 'validation.invalid'
    status_code = 400


class CredentialError(InstacalError):
    """No usable Google token; the user has to reconnect their calendar"""

    code = 'credential.invalid'
    status_code = 401


class ProviderError(InstacalError):
    """The calendar provider rejected the request"""

    code = 'provider.rejected'
    status_code = 502

    def __init__(self, status: int, body: str):
        super().__init__(f"Calendar API error: {status} {body}",
                         meta={'status': status, 'body': body})
        self.status = status
        self.body = body


class TransientIOError(InstacalError):
    """Network failure reaching OCR, Google or the image host"""

    code = 'io.unavailable'
    status_code = 503


class PersistenceError(InstacalError):
    """The database rejected a read or write"""

    code = 'store.failed'
    status_code = 500
