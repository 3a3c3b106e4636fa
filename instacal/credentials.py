"""
Google access tokens for calendar calls.

The stored access token is checked with a cheap calendar read; a 401 triggers
a refresh with the stored refresh token, and the new access token is saved.
"""

import logging
from typing import Callable, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from instacal.calendar_service import GoogleCalendarService
from instacal.errors import CredentialError, TransientIOError
from instacal.stores import UserStore

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = 'https://oauth2.googleapis.com/token'
SCOPES = ['https://www.googleapis.com/auth/calendar']


class GoogleTokenRefresher:
    """Exchanges a refresh token for a new access token"""

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], token_uri: str = GOOGLE_TOKEN_URI):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def __call__(self, refresh_token: str) -> str:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES
        )
        try:
            credentials.refresh(Request())
        except TransportError as e:
            raise TransientIOError(f"Could not reach Google token endpoint: {e}") from e
        except RefreshError as e:
            raise CredentialError(f"Failed to refresh Google access token: {e}") from e

        if not credentials.token:
            raise CredentialError("Failed to refresh Google access token")
        return credentials.token


class GoogleCredentialProvider:
    """Hands out an access token that Google currently accepts"""

    def __init__(self, user_store: UserStore, refresher: Callable[[str], str],
                 calendar_factory: Callable[[str], GoogleCalendarService] = GoogleCalendarService):
        self.user_store = user_store
        self.refresher = refresher
        self.calendar_factory = calendar_factory

    def refresh(self, user_id: int) -> str:
        """Refresh and persist the user's access token"""
        user = self.user_store.get(user_id)
        if user is None or not user.google_refresh_token:
            raise CredentialError("No refresh token found. Please reconnect your Google Calendar.")

        access_token = self.refresher(user.google_refresh_token)
        self.user_store.update_access_token(user_id, access_token)
        logger.info(f"Refreshed Google access token for user {user_id}")
        return access_token

    def get_valid_access_token(self, user_id: int) -> str:
        user = self.user_store.get(user_id)
        if user is None or not user.google_access_token:
            raise CredentialError("No Google access token found. Please connect your Google Calendar.")

        status = self.calendar_factory(user.google_access_token).probe()

        if status == 401:
            if not user.google_refresh_token:
                raise CredentialError("Google access token expired and no refresh token is stored. "
                                      "Please reconnect your Google Calendar.")
            logger.info("Access token expired, refreshing...")
            return self.refresh(user_id)

        if not 200 <= status < 300:
            raise CredentialError("Invalid Google access token", meta={'status': status})

        return user.google_access_token
