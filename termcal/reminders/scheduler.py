import logging
import threading
from dataclasses import replace
from datetime import timedelta

from termcal.core.models import Notification, NotificationTrigger
from termcal.core.utils import format_time, minutes_until, utcnow

logger = logging.getLogger(__name__)


class NotificationScheduler:
    """Derives reminder fire times from events and dispatches each one once.

    A trigger's `dispatched` flag only ever moves from False to True. A
    failed popup does not reset it: a missed reminder is preferred over a
    duplicate one.
    """

    def __init__(self, bridge=None, lead_time=timedelta(minutes=10),
                 early_fire=timedelta(0), clock=utcnow):
        self.bridge = bridge
        self.lead_time = lead_time
        self.early_fire = early_fire
        self.clock = clock
        self._triggers = {}
        self._events = {}
        self._lock = threading.Lock()

    def get(self, event_id):
        return self._triggers.get(event_id)

    def pending(self):
        """Undispatched triggers in firing order."""
        with self._lock:
            return sorted((t for t in self._triggers.values() if not t.dispatched),
                          key=lambda t: (t.fire_time, t.event_id))

    def __len__(self):
        return len(self._triggers)

    def recompute(self, event, now=None):
        """(Re)build the trigger for an event whose version changed."""
        now = now or self.clock()
        fire_time = event.start - self.lead_time
        with self._lock:
            existing = self._triggers.get(event.id)
            if event.start <= now:
                # already started: never backfire
                trigger = NotificationTrigger(event.id, fire_time, event.start, event.etag, dispatched=True)
            elif existing is not None and existing.fire_time == fire_time:
                trigger = replace(existing, version=event.etag)
            else:
                # fire_time may already be past; the next tick sends "starting soon"
                trigger = NotificationTrigger(event.id, fire_time, event.start, event.etag)
            self._triggers[event.id] = trigger
            self._events[event.id] = event
        return trigger

    def discard(self, event_id):
        """Drop an event's trigger, dispatched or not."""
        with self._lock:
            self._events.pop(event_id, None)
            return self._triggers.pop(event_id, None)

    def on_merge(self, result):
        """EventStore listener: follow additions, updates and removals."""
        now = self.clock()
        for event_id in result.removed:
            self.discard(event_id)
        for event in result.added + result.updated:
            self.recompute(event, now)

    def tick(self, now=None):
        """Dispatch every pending trigger that is due and return the notifications."""
        now = now or self.clock()
        deadline = now + self.early_fire
        due = []
        with self._lock:
            pending = sorted((t for t in self._triggers.values() if not t.dispatched),
                             key=lambda t: (t.fire_time, t.event_id))
            for trigger in pending:
                if trigger.fire_time > deadline:
                    break
                self._triggers[trigger.event_id] = trigger.mark_dispatched()
                due.append(self._build_notification(self._events[trigger.event_id], trigger, now))

        for notification in due:
            self._deliver(notification)
        return due

    def _build_notification(self, event, trigger, now):
        if event.all_day:
            body = "All day"
        else:
            minutes = minutes_until(event.start, now)
            when = "now" if minutes == 0 else f"in {minutes} min"
            body = f"Starting soon: {format_time(event.start)} ({when})"
        if event.location:
            body = f"{body}\n{event.location}"
        return Notification(event_id=event.id, title=event.title, body=body, fire_time=trigger.fire_time)

    def _deliver(self, notification):
        logger.info("Reminder for %s: %s", notification.event_id, notification.title)
        if self.bridge is None:
            return
        try:
            delivered = self.bridge.notify(notification.title, notification.body)
        except Exception:
            logger.exception("Multiplexer bridge raised while showing %s", notification.event_id)
            return
        if not delivered:
            logger.warning("Popup for %s was not delivered", notification.event_id)
