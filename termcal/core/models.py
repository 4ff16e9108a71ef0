from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


@dataclass(frozen=True)
class OAuthCredential:
    """An OAuth2 access/refresh token pair with its expiry."""
    access_token: str
    refresh_token: str | None
    expiry: datetime
    scopes: frozenset = frozenset()
    provider: str = "google"

    def expires_within(self, margin, now=None):
        """Return True if the access token expires within `margin` of `now`."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expiry - margin

    def __repr__(self):
        return (
            f"OAuthCredential(provider={self.provider!r}, "
            f"access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expiry={self.expiry.isoformat()!r}, scopes={sorted(self.scopes)!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class CalendarEvent:
    """A single calendar event as reported by the provider."""
    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    etag: str | None = None

    @property
    def sort_key(self):
        return (self.start, self.id)

    def same_version(self, other):
        """Check whether `other` is the same revision of this event.

        Providers that send etags are compared on the etag alone. Without
        one on both sides we fall back to comparing every field.
        """
        if other is None:
            return False
        if self.etag is not None and other.etag is not None:
            return self.etag == other.etag
        return self == other

    def has_ended(self, now):
        return self.end < now


@dataclass(frozen=True)
class NotificationTrigger:
    """When to remind the user about an event, and whether we already did."""
    event_id: str
    fire_time: datetime
    start: datetime
    version: str | None = None
    dispatched: bool = False

    def mark_dispatched(self):
        return replace(self, dispatched=True)


@dataclass(frozen=True)
class Notification:
    """A reminder ready to be shown to the user."""
    event_id: str
    title: str
    body: str
    fire_time: datetime


@dataclass(frozen=True)
class MergeDiff:
    """Changes to apply to the EventStore in one atomic step.

    With `replace_all` set the upserts are the full remote listing and any
    stored id missing from it is deleted.
    """
    upserts: tuple = ()
    removals: frozenset = frozenset()
    replace_all: bool = False


@dataclass(frozen=True)
class MergeResult:
    """What an EventStore merge actually changed."""
    added: tuple = ()
    updated: tuple = ()
    removed: frozenset = frozenset()
    unchanged: int = 0
    version: int = 0

    @property
    def changed(self):
        return bool(self.added or self.updated or self.removed)


@dataclass(frozen=True)
class FetchResult:
    """One provider listing: the events plus the token for the next call."""
    events: tuple = ()
    since_token: str | None = None
    removed_ids: frozenset = field(default_factory=frozenset)
    is_delta: bool = False
