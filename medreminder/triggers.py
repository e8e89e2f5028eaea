# medreminder/triggers.py
#
# Reminder configuration -> host trigger specs. Pure: no store, no host.
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from .models import Recurrence, Reminder, Weekday

SECONDS_PER_DAY = 24 * 60 * 60

# Host facilities number weekdays 1=Sunday ... 7=Saturday
HOST_FIRST_WEEKDAY = 1
HOST_LAST_WEEKDAY = 7


def host_weekday(day: Weekday) -> int:
    return int(Weekday(int(day))) + HOST_FIRST_WEEKDAY


def calendar_weekday(host_day: int) -> Weekday:
    host_day = int(host_day)
    if not HOST_FIRST_WEEKDAY <= host_day <= HOST_LAST_WEEKDAY:
        raise ValueError(f"host weekday out of range: {host_day}")
    return Weekday(host_day - HOST_FIRST_WEEKDAY)


@dataclass(frozen=True)
class DailyTrigger:
    hour: int
    minute: int
    repeats: bool = True


@dataclass(frozen=True)
class WeeklyTrigger:
    weekday: int  # host index
    hour: int
    minute: int
    repeats: bool = True


@dataclass(frozen=True)
class IntervalTrigger:
    seconds: int
    repeats: bool = True
    anchor: Optional[int] = None  # epoch seconds the cadence counts from; None = booking time


TriggerSpec = Union[DailyTrigger, WeeklyTrigger, IntervalTrigger]


def derive_triggers(reminder: Reminder) -> List[TriggerSpec]:
    """
    One spec per concrete booking:
      daily          -> one DailyTrigger
      specific_days  -> one WeeklyTrigger per selected weekday (ordered Sun..Sat)
      interval       -> one repeating IntervalTrigger of interval_days, anchored on start_date
      as_needed      -> nothing
    """
    reminder.validate()
    h, m = reminder.time_of_day.hour, reminder.time_of_day.minute

    if reminder.recurrence is Recurrence.DAILY:
        return [DailyTrigger(hour=h, minute=m)]
    if reminder.recurrence is Recurrence.SPECIFIC_DAYS:
        return [WeeklyTrigger(weekday=host_weekday(d), hour=h, minute=m) for d in reminder.days]
    if reminder.recurrence is Recurrence.INTERVAL:
        return [IntervalTrigger(seconds=int(reminder.interval_days) * SECONDS_PER_DAY, anchor=reminder.start_date)]
    return []


def next_occurrence(spec: TriggerSpec, now: datetime, booked_at: Optional[datetime] = None) -> datetime:
    """
    First fire time strictly after `now`. Interval specs count from their
    anchor, or from `booked_at` when they have none (snoozes), so re-booking an
    anchored interval never shifts its cadence.
    """
    if isinstance(spec, IntervalTrigger):
        start = datetime.fromtimestamp(spec.anchor) if spec.anchor is not None else (booked_at or now)
        step = timedelta(seconds=spec.seconds)
        at = start + step
        if spec.repeats:
            while at <= now:
                at += step
        return at

    at = now.replace(hour=spec.hour, minute=spec.minute, second=0, microsecond=0)
    if isinstance(spec, DailyTrigger):
        if at <= now:
            at += timedelta(days=1)
        return at

    target = calendar_weekday(spec.weekday)
    ahead = (int(target) - int(Weekday.of(now))) % 7
    at += timedelta(days=ahead)
    if at <= now:
        at += timedelta(days=7)
    return at


def repeat_interval_seconds(spec: TriggerSpec) -> Optional[int]:
    if not spec.repeats:
        return None
    if isinstance(spec, DailyTrigger):
        return SECONDS_PER_DAY
    if isinstance(spec, WeeklyTrigger):
        return 7 * SECONDS_PER_DAY
    return spec.seconds


def next_fire_time(reminder: Reminder, now: datetime) -> Optional[datetime]:
    specs = derive_triggers(reminder)
    if not specs:
        return None
    return min(next_occurrence(s, now) for s in specs)


# -------------------------
# Serialization (booking registries)
# -------------------------
_KINDS = {"daily": DailyTrigger, "weekly": WeeklyTrigger, "interval": IntervalTrigger}


def trigger_to_dict(spec: TriggerSpec) -> Dict[str, Any]:
    if isinstance(spec, DailyTrigger):
        return {"type": "daily", "hour": spec.hour, "minute": spec.minute, "repeats": spec.repeats}
    if isinstance(spec, WeeklyTrigger):
        return {"type": "weekly", "weekday": spec.weekday, "hour": spec.hour,
                "minute": spec.minute, "repeats": spec.repeats}
    return {"type": "interval", "seconds": spec.seconds, "repeats": spec.repeats, "anchor": spec.anchor}


def trigger_from_dict(d: Dict[str, Any]) -> TriggerSpec:
    d = dict(d)
    cls = _KINDS.get(d.pop("type", None))
    if cls is None:
        raise ValueError(f"unknown trigger type in {d!r}")
    return cls(**d)
