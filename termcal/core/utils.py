from datetime import datetime, timezone, timedelta


def utcnow():
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_time(dt):
    """Format time as h:mm am/pm in local time, dropping ':00'."""
    return dt.astimezone().strftime('%I:%M%p').lstrip('0').replace(':00', '').lower()


def format_event_time(start_dt, end_dt, all_day=False):
    """Format event start and end time consistently."""
    if all_day:
        return "All day"
    return f"{format_time(start_dt)}-{format_time(end_dt)}"


def format_iso_for_api(dt):
    """Format datetime as ISO format for Google API."""
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_iso_from_api(iso_str):
    """Parse ISO datetime string from Google API."""
    dt = datetime.fromisoformat(iso_str.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_event_datetime(event, field='start'):
    """Parse a start/end field of a Google Calendar event into aware UTC.

    All-day events carry a bare date; it is anchored to local midnight, so an
    exclusive end date lands on midnight after the last day.
    """
    value = event.get(field) or {}
    if value.get('dateTime'):
        return parse_iso_from_api(value['dateTime']).astimezone(timezone.utc)
    if value.get('date'):
        local_date = datetime.fromisoformat(value['date']).date()
        local_tz = datetime.now().astimezone().tzinfo
        local_dt = datetime.combine(local_date, datetime.min.time()).replace(tzinfo=local_tz)
        return local_dt.astimezone(timezone.utc)
    raise ValueError(f"event {event.get('id')!r} has no {field} time")


def minutes_until(then, now):
    """Whole minutes from `now` until `then`, rounded up, never negative."""
    seconds = (then - now) / timedelta(seconds=1)
    if seconds <= 0:
        return 0
    return int(-(-seconds // 60))


def aware_expiry(expiry, default_lifetime=timedelta(hours=1)):
    """Turn google-auth's naive UTC expiry into an aware datetime."""
    if expiry is None:
        return utcnow() + default_lifetime
    return expiry.replace(tzinfo=timezone.utc)
