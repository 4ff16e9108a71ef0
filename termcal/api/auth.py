import os
import json
import logging
import tempfile
import threading
from concurrent.futures import Future
from datetime import timedelta

from google_auth_oauthlib.flow import InstalledAppFlow

from termcal.core.errors import (
    AuthExpired, AuthRevoked, AuthTransient, NetworkError, RateLimited, Unauthorized,
)
from termcal.core.models import OAuthCredential
from termcal.core.utils import aware_expiry, parse_iso_from_api, utcnow

logger = logging.getLogger(__name__)


class TokenFile:
    """Persists the OAuth credential as JSON readable only by the owner."""

    def __init__(self, path):
        self.path = path

    def load(self):
        """Load the stored credential, or None if nothing usable is on disk."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, 'r') as fh:
                data = json.load(fh)
            return OAuthCredential(
                access_token=data['token'],
                refresh_token=data.get('refresh_token'),
                expiry=parse_iso_from_api(data['expiry']),
                scopes=frozenset(data.get('scopes', [])),
                provider=data.get('provider', 'google'),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, e)
            return None

    def save(self, credential):
        """Write the credential atomically with 0600 permissions."""
        payload = {
            'token': credential.access_token,
            'refresh_token': credential.refresh_token,
            'expiry': credential.expiry.isoformat(),
            'scopes': sorted(credential.scopes),
            'provider': credential.provider,
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        # mkstemp creates the file with mode 0600
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.token-', suffix='.json')
        try:
            with os.fdopen(fd, 'w') as fh:
                json.dump(payload, fh)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self):
        """Delete the stored credential."""
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class TokenVault:
    """Owns the OAuth credential and keeps it fresh.

    At most one refresh runs at a time. Callers that arrive while one is in
    flight wait on the same future instead of spending the refresh token a
    second time.
    """

    def __init__(self, provider, token_file=None, safety_margin=timedelta(seconds=60), clock=utcnow):
        self.provider = provider
        self.token_file = token_file
        self.safety_margin = safety_margin
        self.clock = clock
        self._credential = None
        self._lock = threading.Lock()
        self._inflight = None
        self.refresh_count = 0
        if token_file is not None:
            credential = token_file.load()
            if credential is not None and credential.provider != provider.name:
                logger.warning("Ignoring stored %s credential, provider is %s",
                               credential.provider, provider.name)
                credential = None
            self._credential = credential

    @property
    def credential(self):
        return self._credential

    @property
    def is_authenticated(self):
        return self._credential is not None

    def authenticate(self, credential):
        """Store a credential obtained from the consent flow."""
        with self._lock:
            self._credential = credential
            self._persist(credential)
        logger.info("Authenticated with %s", credential.provider)

    def sign_out(self):
        """Forget the credential; the next current() raises AuthExpired."""
        with self._lock:
            self._credential = None
            if self.token_file is not None:
                self.token_file.clear()

    def current(self):
        """Return a credential that stays valid for at least the safety margin."""
        credential = self._credential
        if credential is not None and not credential.expires_within(self.safety_margin, self.clock()):
            return credential
        return self._refresh(only_if_stale=True)

    def refresh(self):
        """Exchange the refresh token for a new access token now."""
        return self._refresh(only_if_stale=False)

    def _refresh(self, only_if_stale):
        with self._lock:
            future = self._inflight
            owner = future is None
            if owner:
                credential = self._credential
                if credential is None or not credential.refresh_token:
                    raise AuthExpired("No refresh token held; sign in again")
                if only_if_stale and not credential.expires_within(self.safety_margin, self.clock()):
                    return credential
                future = self._inflight = Future()

        if not owner:
            return future.result()

        try:
            new_credential = self._exchange(credential)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(new_credential)
            return new_credential
        finally:
            with self._lock:
                self._inflight = None

    def _exchange(self, credential):
        self.refresh_count += 1
        expires_in = (credential.expiry - self.clock()).total_seconds()
        logger.info("Refreshing access token (expires in %.0f seconds)", expires_in)
        try:
            new_credential = self.provider.exchange_refresh_token(credential.refresh_token)
        except Unauthorized as e:
            logger.warning("Refresh token rejected by %s: %s", credential.provider, e)
            with self._lock:
                self._credential = None
                if self.token_file is not None:
                    self.token_file.clear()
            raise AuthRevoked(str(e)) from e
        except (NetworkError, RateLimited) as e:
            logger.warning("Token refresh failed, keeping current credential: %s", e)
            raise AuthTransient(str(e)) from e

        with self._lock:
            self._credential = new_credential
            self._persist(new_credential)
        return new_credential

    def _persist(self, credential):
        if self.token_file is None:
            return
        try:
            self.token_file.save(credential)
        except OSError as e:
            logger.error("Could not persist credential to %s: %s", self.token_file.path, e)


def run_consent_flow(provider, timeout_seconds=120):
    """Run the browser consent flow for `provider` and return the resulting credential."""
    if provider.name != 'google':
        # Microsoft answers with the scopes in a different form than requested
        os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')
    flow = InstalledAppFlow.from_client_config(provider.client_config(), provider.scopes)
    creds = flow.run_local_server(port=0, timeout_seconds=timeout_seconds)
    if creds is None or not creds.token:
        raise AuthExpired("Consent flow did not return a token")
    return OAuthCredential(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=aware_expiry(creds.expiry),
        scopes=frozenset(creds.granted_scopes or creds.scopes or provider.scopes),
        provider=provider.name,
    )
