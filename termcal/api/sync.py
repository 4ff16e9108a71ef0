import logging
import threading
from datetime import timedelta

from termcal.core.errors import (
    AuthExpired, AuthRevoked, AuthTransient, NetworkError, RateLimited,
    SyncError, SyncTokenExpired, SyncUnauthenticated, SyncUnavailable, Unauthorized,
)
from termcal.core.models import MergeDiff
from termcal.core.utils import utcnow

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (AuthTransient, NetworkError, RateLimited)


class SyncEngine:
    """Pulls events from the provider and merges them into the EventStore.

    Transient failures are retried with capped exponential backoff. When the
    budget runs out the previous snapshot is left in place and
    SyncUnavailable is raised; it is never replaced with an empty one.

    A full listing reaches `relist_interval` past the lookahead window. Events
    in that margin are parked here and promoted into the store as the window
    slides over them, since a delta only reports events that changed. Once the
    window passes the end of the last full listing, the next sync relists.
    """

    def __init__(self, vault, provider, store, retention=timedelta(minutes=15),
                 lookahead=timedelta(days=7), max_attempts=4, backoff_base=2.0,
                 backoff_cap=60.0, relist_interval=timedelta(days=1), clock=utcnow, sleep=None):
        self.vault = vault
        self.provider = provider
        self.store = store
        self.retention = retention
        self.lookahead = lookahead
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.relist_interval = relist_interval
        self.clock = clock
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._sync_lock = threading.Lock()
        self.since_token = None
        self.listed_until = None
        self._parked = {}
        self.last_success = None
        self.last_error = None

    @classmethod
    def from_config(cls, config, vault, provider, store, **kwargs):
        return cls(
            vault, provider, store,
            retention=config.retention,
            lookahead=config.lookahead,
            max_attempts=config.sync_max_attempts,
            backoff_base=config.backoff_base_seconds,
            backoff_cap=config.backoff_cap_seconds,
            relist_interval=config.relist_interval,
            **kwargs,
        )

    @property
    def stopped(self):
        return self._stop.is_set()

    def stop(self):
        """Abort any backoff wait; an in-flight request still runs to completion."""
        self._stop.set()

    def sync_once(self):
        """Fetch and merge once, retrying transient failures."""
        with self._sync_lock:
            try:
                result = self._sync_with_retry()
            except SyncError as e:
                self.last_error = e
                raise
            self.last_success = self.clock()
            self.last_error = None
            return result

    def _sync_with_retry(self):
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt()
            except (AuthExpired, AuthRevoked) as e:
                logger.warning("Sync needs re-authentication: %s", e)
                raise SyncUnauthenticated(str(e)) from e
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_attempts:
                    logger.error("Sync failed after %d attempts: %s", attempt, e)
                    raise SyncUnavailable(f"Calendar unavailable after {attempt} attempts: {e}") from e
                delay = self.backoff_delay(attempt, e)
                logger.warning("Sync attempt %d failed (%s), retrying in %.1fs", attempt, e, delay)
                self._sleep(delay)
                if self._stop.is_set():
                    raise SyncUnavailable("Sync interrupted by shutdown") from e

    def backoff_delay(self, attempt, error=None):
        """Delay before retry number `attempt`, honouring Retry-After up to the cap."""
        delay = self.backoff_base * (2 ** (attempt - 1))
        retry_after = getattr(error, 'retry_after', None)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.backoff_cap)

    def _attempt(self):
        credential = self.vault.current()
        now = self.clock()
        try:
            fetched = self._fetch(credential, now)
        except Unauthorized:
            # the token looked fresh but the provider disagrees
            logger.warning("Access token rejected, forcing a refresh")
            credential = self.vault.refresh()
            try:
                fetched = self._fetch(credential, now)
            except Unauthorized as e:
                raise SyncUnauthenticated(f"Provider rejected a freshly refreshed token: {e}") from e
        return self._merge(fetched, now)

    def _fetch(self, credential, now):
        time_min = now - self.retention
        time_max = now + self.lookahead + self.relist_interval
        if self.since_token and self.listed_until is not None and now + self.lookahead > self.listed_until:
            logger.info("Lookahead window passed the last full listing, relisting")
            self.since_token = None
        if self.since_token:
            try:
                return self.provider.fetch_events(credential, self.since_token,
                                                  time_min=time_min, time_max=time_max)
            except SyncTokenExpired:
                logger.info("Sync token expired, falling back to a full listing")
                self.since_token = None
        return self.provider.fetch_events(credential, None, time_min=time_min, time_max=time_max)

    def _merge(self, fetched, now):
        window_start = now - self.retention
        window_end = now + self.lookahead
        if fetched.is_delta:
            parked = dict(self._parked)
            listed_until = self.listed_until
        else:
            parked = {}
            listed_until = window_end + self.relist_interval

        for event_id in fetched.removed_ids:
            parked.pop(event_id, None)

        upserts = []
        outside = set()
        for event in fetched.events:
            parked.pop(event.id, None)
            if event.end >= window_start and event.start <= window_end:
                upserts.append(event)
                continue
            outside.add(event.id)
            if event.start > window_end and (listed_until is None or event.start <= listed_until):
                parked[event.id] = event

        # parked events the window has caught up with
        for event_id, event in list(parked.items()):
            if event.start <= window_end:
                del parked[event_id]
                if event.end >= window_start:
                    upserts.append(event)

        if fetched.is_delta:
            diff = MergeDiff(upserts=tuple(upserts), removals=frozenset(fetched.removed_ids | outside))
        else:
            diff = MergeDiff(upserts=tuple(upserts), removals=frozenset(fetched.removed_ids), replace_all=True)

        result = self.store.apply_merge(diff, now)
        self.since_token = fetched.since_token
        self.listed_until = listed_until
        self._parked = parked
        return result
