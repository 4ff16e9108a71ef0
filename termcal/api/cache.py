import logging
import threading
from datetime import timedelta

from termcal.core.models import MergeResult
from termcal.core.utils import utcnow

logger = logging.getLogger(__name__)


class EventStore:
    """In-memory calendar cache shared by the UI and the reminder scheduler.

    The contents are an immutable tuple ordered by (start, id). Writers build
    a new state under the write lock and publish it with a single reference
    assignment, so readers never lock and never see a half-applied merge.
    """

    def __init__(self, retention=timedelta(minutes=15), clock=utcnow):
        self.retention = retention
        self.clock = clock
        # (ordered events, events by id, version), replaced as one unit
        self._state = ((), {}, 0)
        self._write_lock = threading.Lock()
        self._listeners = []

    def snapshot(self):
        """Return the current point-in-time ordered tuple of events."""
        return self._state[0]

    @property
    def version(self):
        return self._state[2]

    def __len__(self):
        return len(self._state[0])

    def get(self, event_id):
        """Look up a single event by id."""
        return self._state[1].get(event_id)

    def upcoming(self, now=None, limit=None):
        """Events that have not ended yet, in start order."""
        now = now or self.clock()
        events = [e for e in self.snapshot() if not e.has_ended(now)]
        return events[:limit] if limit is not None else events

    def add_listener(self, callback):
        """Register a callable that receives the MergeResult of each merge."""
        self._listeners.append(callback)

    def apply_merge(self, diff, now=None):
        """Apply a MergeDiff and publish the new snapshot."""
        now = now or self.clock()
        with self._write_lock:
            _, current, version = self._state
            merged = {} if diff.replace_all else dict(current)

            added, updated = {}, {}
            unchanged = 0
            for event in {e.id: e for e in diff.upserts}.values():
                previous = current.get(event.id)
                if previous is None:
                    added[event.id] = event
                elif not previous.same_version(event):
                    updated[event.id] = event
                else:
                    unchanged += 1
                    event = previous
                merged[event.id] = event

            for event_id in diff.removals:
                merged.pop(event_id, None)

            cutoff = now - self.retention
            for event_id in [i for i, e in merged.items() if e.end < cutoff]:
                del merged[event_id]

            ordered = tuple(sorted(merged.values(), key=lambda e: e.sort_key))
            version += 1
            self._state = (ordered, merged, version)

            result = MergeResult(
                added=tuple(e for i, e in added.items() if i in merged),
                updated=tuple(e for i, e in updated.items() if i in merged),
                removed=frozenset(set(current) - set(merged)),
                unchanged=unchanged,
                version=version,
            )
            if result.changed:
                logger.info("Merged events: %d added, %d updated, %d removed",
                            len(result.added), len(result.updated), len(result.removed))
            # listeners run under the write lock so they see merges in order
            for callback in list(self._listeners):
                try:
                    callback(result)
                except Exception:
                    logger.exception("EventStore listener %r failed", callback)
        return result
