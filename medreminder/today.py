# medreminder/today.py
from datetime import date, datetime
from typing import Iterable, List, Optional

from .models import Recurrence, Reminder, Weekday


def is_due_on(reminder: Reminder, day: date) -> bool:
    # interval / as_needed have no deterministic slot on a given day
    if reminder.recurrence is Recurrence.DAILY:
        return True
    if reminder.recurrence is Recurrence.SPECIFIC_DAYS:
        return Weekday.of(day) in reminder.days
    return False


def todays_remaining(reminders: Iterable[Reminder], now: Optional[datetime] = None) -> List[Reminder]:
    """Enabled reminders still ahead of `now` today, earliest first. Past slots are dropped, not shown overdue."""
    now = now or datetime.now()
    current = now.hour * 60 + now.minute
    left = [
        r for r in reminders
        if r.is_active and r.enabled and r.time_of_day is not None
        and is_due_on(r, now.date())
        and r.minutes_since_midnight >= current
    ]
    return sorted(left, key=lambda r: r.minutes_since_midnight)
