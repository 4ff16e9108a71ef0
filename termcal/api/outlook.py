import logging
from datetime import datetime, timedelta, timezone

import requests

from termcal.api.calendar import ProviderClient
from termcal.core.config import GRAPH_BASE_URL, OUTLOOK_DEFAULT_TENANT, OUTLOOK_LOGIN_URL, OUTLOOK_SCOPES
from termcal.core.errors import NetworkError, RateLimited, Unauthorized
from termcal.core.models import CalendarEvent, FetchResult, OAuthCredential
from termcal.core.utils import format_iso_for_api, utcnow

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def parse_graph_datetime(value, all_day=False):
    """Parse a Graph dateTimeTimeZone requested in UTC.

    Graph sends seven fractional digits, which datetime does not accept.
    All-day events are anchored to local midnight of their date.
    """
    text = value['dateTime']
    if '.' in text:
        head, fraction = text.split('.', 1)
        text = f"{head}.{fraction[:6]}"
    dt = datetime.fromisoformat(text)
    if all_day:
        local_tz = datetime.now().astimezone().tzinfo
        return datetime.combine(dt.date(), datetime.min.time()).replace(tzinfo=local_tz).astimezone(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def event_from_graph(item):
    """Convert a Graph event resource to a CalendarEvent."""
    all_day = bool(item.get('isAllDay'))
    location = (item.get('location') or {}).get('displayName')
    return CalendarEvent(
        id=item['id'],
        title=item.get('subject') or 'No Title',
        start=parse_graph_datetime(item['start'], all_day),
        end=parse_graph_datetime(item['end'], all_day),
        all_day=all_day,
        location=location or None,
        etag=item.get('@odata.etag') or item.get('changeKey'),
    )


def map_graph_response(response):
    """Translate a failed Graph or token endpoint response into a provider error."""
    status = response.status_code
    message = f"Microsoft Graph request failed ({status})"
    if status == 429 or (status == 503 and response.headers.get('Retry-After')):
        return RateLimited(message, retry_after=_retry_after(response))
    if status in (401, 403):
        return Unauthorized(message)
    if status >= 500:
        return NetworkError(message)
    return NetworkError(f"{message}: {response.text[:200]}")


def _retry_after(response):
    try:
        return float(response.headers['Retry-After'])
    except (KeyError, ValueError):
        return None


class OutlookCalendarClient(ProviderClient):
    """Reads the signed-in user's calendar view from Microsoft Graph.

    Graph is always listed in full; `since_token` is ignored.
    """

    name = 'outlook'

    def __init__(self, client_id, client_secret=None, tenant=OUTLOOK_DEFAULT_TENANT,
                 base_url=GRAPH_BASE_URL, scopes=OUTLOOK_SCOPES, http_timeout=30, session=None):
        self.client_id = client_id
        self.client_secret = client_secret or None
        self.tenant = tenant
        self.base_url = base_url.rstrip('/')
        self.scopes = list(scopes)
        self.http_timeout = http_timeout
        self.session = session or requests.Session()

    @property
    def token_uri(self):
        return f"{OUTLOOK_LOGIN_URL}/{self.tenant}/oauth2/v2.0/token"

    @property
    def auth_uri(self):
        return f"{OUTLOOK_LOGIN_URL}/{self.tenant}/oauth2/v2.0/authorize"

    def client_config(self):
        return {'installed': {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'auth_uri': self.auth_uri,
            'token_uri': self.token_uri,
        }}

    def fetch_events(self, credential, since_token=None, time_min=None, time_max=None):
        now = utcnow()
        time_min = time_min or now
        time_max = time_max or now + timedelta(days=7)
        headers = {
            'Authorization': f"Bearer {credential.access_token}",
            'Prefer': 'outlook.timezone="UTC"',
        }
        url = f"{self.base_url}/me/calendarView"
        params = {
            'startDateTime': format_iso_for_api(time_min),
            'endDateTime': format_iso_for_api(time_max),
            '$top': PAGE_SIZE,
        }

        events = []
        removed_ids = set()
        while url:
            page = self._get(url, params, headers)
            for item in page.get('value', []):
                if item.get('isCancelled'):
                    removed_ids.add(item['id'])
                    continue
                try:
                    events.append(event_from_graph(item))
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning("Skipping malformed event %s: %s", item.get('id'), e)
            # nextLink already carries the query
            url = page.get('@odata.nextLink')
            params = None

        logger.debug("Fetched %d Outlook events (%d cancelled)", len(events), len(removed_ids))
        return FetchResult(events=tuple(events), removed_ids=frozenset(removed_ids))

    def _get(self, url, params, headers):
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.http_timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Microsoft Graph unreachable: {e}") from e
        if not response.ok:
            raise map_graph_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Microsoft Graph returned invalid JSON: {e}") from e

    def exchange_refresh_token(self, refresh_token):
        data = {
            'client_id': self.client_id,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'scope': ' '.join(self.scopes),
        }
        if self.client_secret:
            data['client_secret'] = self.client_secret
        try:
            response = self.session.post(self.token_uri, data=data, timeout=self.http_timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Token endpoint unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            error = payload.get('error')
            if error in ('invalid_grant', 'interaction_required', 'invalid_client', 'unauthorized_client'):
                raise Unauthorized(f"Refresh token rejected: {error}")
            raise map_graph_response(response)
        if 'access_token' not in payload:
            raise NetworkError("Token endpoint response carried no access token")

        expires_in = payload.get('expires_in', 3600)
        scopes = payload.get('scope', '').split() or self.scopes
        return OAuthCredential(
            access_token=payload['access_token'],
            # Microsoft rotates refresh tokens
            refresh_token=payload.get('refresh_token') or refresh_token,
            expiry=utcnow() + timedelta(seconds=int(expires_in)),
            scopes=frozenset(scopes),
            provider=self.name,
        )
