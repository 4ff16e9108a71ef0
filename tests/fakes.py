"""Test doubles shared across the test modules."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

from termcal.api.calendar import ProviderClient
from termcal.core.models import CalendarEvent, FetchResult, OAuthCredential

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """A settable clock usable wherever a `clock=` callable is accepted."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


def make_event(event_id: str, start: datetime, minutes: int = 30, etag: str | None = "v1",
               title: str | None = None, **kwargs) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title=title or f"Event {event_id}",
        start=start,
        end=start + timedelta(minutes=minutes),
        etag=etag,
        **kwargs,
    )


def make_credential(expiry: datetime, access_token: str = "access-1",
                    refresh_token: str | None = "refresh-1") -> OAuthCredential:
    return OAuthCredential(
        access_token=access_token,
        refresh_token=refresh_token,
        expiry=expiry,
        scopes=frozenset({"calendar.readonly"}),
    )


class FakeProvider(ProviderClient):
    """Scriptable provider.

    `fetch_script` and `exchange_script` are consumed front to back; an entry
    that is an exception instance is raised, anything else is returned. When
    a script is empty, fetches return `listing` and exchanges mint a token
    valid for an hour from `clock()`.
    """

    name = "google"
    scopes = ["calendar.readonly"]

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.listing: list[CalendarEvent] = []
        self.fetch_script: list = []
        self.exchange_script: list = []
        self.fetch_calls: list[tuple] = []
        self.exchange_calls: list[str] = []
        self.exchange_gate: threading.Event | None = None
        self._lock = threading.Lock()

    def fetch_events(self, credential, since_token=None, time_min=None, time_max=None):
        self.fetch_calls.append((credential.access_token, since_token))
        if self.fetch_script:
            item = self.fetch_script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return FetchResult(events=tuple(self.listing), since_token=None)

    def exchange_refresh_token(self, refresh_token):
        with self._lock:
            self.exchange_calls.append(refresh_token)
            count = len(self.exchange_calls)
        if self.exchange_gate is not None:
            self.exchange_gate.wait(timeout=5)
        if self.exchange_script:
            item = self.exchange_script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return make_credential(self.clock() + timedelta(hours=1), access_token=f"access-{count + 1}",
                               refresh_token=refresh_token)

    def client_config(self):
        return {"installed": {"client_id": "fake", "client_secret": None,
                              "auth_uri": "https://auth.test/authorize", "token_uri": "https://auth.test/token"}}


class RecordingBridge:
    """MultiplexerBridge stand-in that remembers what it was asked to show."""

    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> bool:
        self.calls.append((title, body))
        if self.error is not None:
            raise self.error
        return self.result
