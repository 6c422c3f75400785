from datetime import datetime, timedelta
from typing import Any

from ..config import MAX_ADVANCE_BOOKING_DAYS, SESSION_DURATIONS, START_TIME_WINDOW_SECONDS


def is_valid_session_duration(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return value in SESSION_DURATIONS


def get_session_end_time(start_time: datetime, duration_minutes: int) -> datetime:
    return start_time + timedelta(minutes=duration_minutes)


def is_session_active(start_time: datetime, duration_minutes: int, now: datetime) -> bool:
    return start_time <= now < get_session_end_time(start_time, duration_minutes)


def get_time_remaining(start_time: datetime, duration_minutes: int, now: datetime) -> timedelta:
    remaining = get_session_end_time(start_time, duration_minutes) - now
    return max(timedelta(0), remaining)


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{hours} hr"
    return f"{hours} hr {rest} min"


def booking_window_error(start_time: datetime, now: datetime) -> str | None:
    """Return a user-facing error when ``start_time`` cannot be requested, else None.

    Immediate sessions are allowed as long as the start is not further in the
    past than the matching window.
    """
    if start_time < now - timedelta(seconds=START_TIME_WINDOW_SECONDS):
        return "Session start time is in the past"
    if start_time > now + timedelta(days=MAX_ADVANCE_BOOKING_DAYS):
        return f"Sessions can be requested at most {MAX_ADVANCE_BOOKING_DAYS} days in advance"
    return None
