import abc
import json
import logging

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from termcal.core.config import (
    API_MAX_RESULTS, DEFAULT_CALENDAR_ID, GOOGLE_AUTH_URI, GOOGLE_TOKEN_URI, SCOPES,
)
from termcal.core.errors import (
    ConfigError, NetworkError, RateLimited, SyncTokenExpired, Unauthorized,
)
from termcal.core.models import CalendarEvent, FetchResult, OAuthCredential
from termcal.core.utils import aware_expiry, format_iso_for_api, parse_event_datetime

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded')


class ProviderClient(abc.ABC):
    """Authenticated access to a remote calendar."""

    name = 'provider'
    scopes = ()

    @abc.abstractmethod
    def fetch_events(self, credential, since_token=None, time_min=None, time_max=None):
        """List events, as a delta against `since_token` when one is given.

        Returns a FetchResult. Raises Unauthorized, RateLimited, NetworkError
        or SyncTokenExpired.
        """

    @abc.abstractmethod
    def exchange_refresh_token(self, refresh_token):
        """Trade a refresh token for a fresh OAuthCredential."""

    @abc.abstractmethod
    def client_config(self):
        """OAuth client settings in the installed-app layout the consent flow reads."""


def event_from_google(item):
    """Convert a Google Calendar event resource to a CalendarEvent."""
    start = parse_event_datetime(item, field='start')
    end = parse_event_datetime(item, field='end') if item.get('end') else start
    start_field = item.get('start', {})
    return CalendarEvent(
        id=item['id'],
        title=item.get('summary') or 'No Title',
        start=start,
        end=end,
        all_day=bool(start_field.get('date')) and not start_field.get('dateTime'),
        location=item.get('location') or None,
        etag=item.get('etag'),
    )


def map_http_error(error):
    """Translate a googleapiclient HttpError into the provider error taxonomy."""
    status = error.resp.status
    content = error.content.decode('utf-8', 'replace') if isinstance(error.content, bytes) else str(error.content)
    message = f"Google Calendar API request failed ({status})"
    if status == 401:
        return Unauthorized(message)
    if status == 410:
        return SyncTokenExpired(message)
    if status == 429 or (status == 403 and any(r in content for r in RATE_LIMIT_REASONS)):
        return RateLimited(message, retry_after=_retry_after(error.resp))
    if status == 403:
        return Unauthorized(message)
    if status >= 500:
        return NetworkError(message)
    return NetworkError(f"{message}: {content[:200]}")


def _retry_after(resp):
    value = resp.get('retry-after')
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class GoogleCalendarClient(ProviderClient):
    """Reads events from one Google calendar."""

    name = 'google'

    def __init__(self, client_id, client_secret, calendar_id=DEFAULT_CALENDAR_ID,
                 token_uri=GOOGLE_TOKEN_URI, scopes=SCOPES, http_timeout=30):
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_id = calendar_id
        self.token_uri = token_uri
        self.scopes = list(scopes)
        self.http_timeout = http_timeout
        self.services = {}

    @classmethod
    def from_client_secrets_file(cls, path, **kwargs):
        """Build a client from the OAuth client JSON downloaded from Google."""
        try:
            with open(path, 'r') as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not read client secrets {path}: {e}") from e
        section = data.get('installed') or data.get('web')
        if not section or 'client_id' not in section or 'client_secret' not in section:
            raise ConfigError(f"{path} is not an OAuth client secrets file")
        kwargs.setdefault('token_uri', section.get('token_uri', GOOGLE_TOKEN_URI))
        return cls(section['client_id'], section['client_secret'], **kwargs)

    def client_config(self):
        return {'installed': {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'auth_uri': GOOGLE_AUTH_URI,
            'token_uri': self.token_uri,
        }}

    def get_service(self, credential):
        """Get a calendar service bound to the credential's access token."""
        if credential.access_token in self.services:
            return self.services[credential.access_token]

        # No refresh fields: renewal is TokenVault's job, not the transport's
        creds = Credentials(token=credential.access_token)
        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=self.http_timeout))
        service = build('calendar', 'v3', http=http, cache_discovery=False)
        self.services = {credential.access_token: service}
        return service

    def fetch_events(self, credential, since_token=None, time_min=None, time_max=None):
        service = self.get_service(credential)
        params = {
            'calendarId': self.calendar_id,
            'maxResults': API_MAX_RESULTS,
            'singleEvents': True,
        }
        if since_token:
            params['syncToken'] = since_token
        else:
            if time_min:
                params['timeMin'] = format_iso_for_api(time_min)
            if time_max:
                params['timeMax'] = format_iso_for_api(time_max)

        events = []
        removed_ids = set()
        page_token = None
        while True:
            if page_token:
                params['pageToken'] = page_token
            result = self._execute(service.events().list(**params))

            for item in result.get('items', []):
                if item.get('status') == 'cancelled':
                    removed_ids.add(item['id'])
                    continue
                try:
                    events.append(event_from_google(item))
                except (KeyError, ValueError) as e:
                    logger.warning("Skipping malformed event %s: %s", item.get('id'), e)

            page_token = result.get('nextPageToken')
            if not page_token:
                next_sync_token = result.get('nextSyncToken')
                break

        logger.debug("Fetched %d events (%d cancelled, delta=%s)",
                     len(events), len(removed_ids), bool(since_token))
        return FetchResult(
            events=tuple(events),
            since_token=next_sync_token,
            removed_ids=frozenset(removed_ids),
            is_delta=bool(since_token),
        )

    def _execute(self, request):
        try:
            return request.execute()
        except HttpError as e:
            raise map_http_error(e) from e
        except (httplib2.HttpLib2Error, TransportError, OSError) as e:
            raise NetworkError(f"Google Calendar API unreachable: {e}") from e

    def exchange_refresh_token(self, refresh_token):
        creds = Credentials(
            None,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
        )
        try:
            creds.refresh(Request())
        except RefreshError as e:
            if getattr(e, 'retryable', False):
                raise NetworkError(f"Token endpoint temporarily unavailable: {e}") from e
            raise Unauthorized(f"Refresh token rejected: {e}") from e
        except TransportError as e:
            raise NetworkError(f"Token endpoint unreachable: {e}") from e

        return OAuthCredential(
            access_token=creds.token,
            refresh_token=creds.refresh_token or refresh_token,
            expiry=aware_expiry(creds.expiry),
            scopes=frozenset(creds.granted_scopes or self.scopes),
            provider=self.name,
        )
