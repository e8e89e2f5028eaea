# medreminder/models.py
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, Iterator, Optional, Union

from .config import DEFAULT_SOUND
from .errors import ValidationError


# -------------------------
# Weekdays / day-sets
# -------------------------
class Weekday(IntEnum):
    """Calendar weekday, 0=Sunday ... 6=Saturday."""

    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, d: Union[date, datetime]) -> "Weekday":
        # date.weekday() is 0=Monday
        return cls((d.weekday() + 1) % 7)


class DaySet:
    """Immutable 7-bit set of weekdays. Bit n is Weekday(n)."""

    __slots__ = ("_mask",)

    FULL_MASK = 0b1111111

    def __init__(self, days: Iterable[Union[int, Weekday]] = ()):
        mask = 0
        for d in days:
            try:
                wd = Weekday(int(d))
            except ValueError:
                raise ValidationError(f"weekday out of range: {d!r}")
            mask |= 1 << int(wd)
        self._mask = mask

    @classmethod
    def from_mask(cls, mask: int) -> "DaySet":
        mask = int(mask)
        if mask < 0 or mask > cls.FULL_MASK:
            raise ValidationError(f"day mask out of range: {mask}")
        ds = cls()
        ds._mask = mask
        return ds

    @classmethod
    def every_day(cls) -> "DaySet":
        return cls.from_mask(cls.FULL_MASK)

    @property
    def mask(self) -> int:
        return self._mask

    def __iter__(self) -> Iterator[Weekday]:
        for wd in Weekday:
            if self._mask & (1 << int(wd)):
                yield wd

    def __len__(self) -> int:
        return bin(self._mask).count("1")

    def __contains__(self, day) -> bool:
        try:
            return bool(self._mask & (1 << int(Weekday(int(day)))))
        except ValueError:
            return False

    def __bool__(self) -> bool:
        return self._mask != 0

    def __eq__(self, other) -> bool:
        return isinstance(other, DaySet) and other._mask == self._mask

    def __hash__(self) -> int:
        return hash(self._mask)

    def __repr__(self) -> str:
        return f"DaySet([{', '.join(d.name.title()[:3] for d in self)}])"


class Recurrence(str, Enum):
    DAILY = "daily"
    SPECIFIC_DAYS = "specific_days"
    INTERVAL = "interval"
    AS_NEEDED = "as_needed"


class IntakeStatus(str, Enum):
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"


class TriggerKind(str, Enum):
    REMINDER = "reminder"
    SNOOZE = "snooze"


# -------------------------
# Time helpers (wall-clock local, epoch seconds in the store)
# -------------------------
def parse_time_of_day(value) -> Optional[dtime]:
    if value is None or value == "":
        return None
    if isinstance(value, dtime):
        return value.replace(second=0, microsecond=0)
    try:
        h, m = map(int, str(value).split(":"))
        return dtime(hour=h, minute=m)
    except ValueError:
        raise ValidationError(f"invalid time of day: {value!r} (expected HH:MM)")


def format_time_of_day(t: Optional[dtime]) -> Optional[str]:
    return t.strftime("%H:%M") if t is not None else None


def to_ts(dt: Optional[datetime]) -> Optional[int]:
    return int(dt.timestamp()) if dt is not None else None


def coerce_enum(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"unknown {what} {value!r}; expected one of: {allowed}")


# -------------------------
# Records
# -------------------------
@dataclass
class User:
    user_id: str
    name: str = "User"
    email: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    is_premium: bool = False
    premium_expires_at: Optional[int] = None
    onboarding_completed: bool = False
    timezone: str = "UTC"
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass
class Medicine:
    med_id: str
    user_id: str
    verified_name: str
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    form: Optional[str] = None
    strength: Optional[str] = None
    custom_name: Optional[str] = None
    notes: Optional[str] = None
    api_source: str = "manual"
    api_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.custom_name or self.verified_name

    def validate(self):
        if not (self.verified_name or "").strip():
            raise ValidationError("medicine name is required")


@dataclass
class Reminder:
    reminder_id: str
    med_id: str
    user_id: str
    time_of_day: Optional[dtime]
    days: DaySet = field(default_factory=DaySet.every_day)
    recurrence: Recurrence = Recurrence.DAILY
    interval_days: Optional[int] = None
    enabled: bool = True
    notification_enabled: bool = True
    sound: str = DEFAULT_SOUND
    snooze_enabled: bool = True
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    next_trigger: Optional[int] = None
    last_triggered: Optional[int] = None
    is_active: bool = True
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def __post_init__(self):
        self.time_of_day = parse_time_of_day(self.time_of_day)
        self.recurrence = coerce_enum(Recurrence, self.recurrence, "recurrence")
        if not isinstance(self.days, DaySet):
            self.days = DaySet(self.days or ())

    @property
    def minutes_since_midnight(self) -> int:
        return self.time_of_day.hour * 60 + self.time_of_day.minute

    def validate(self):
        if self.time_of_day is None:
            raise ValidationError("reminder time is required")
        if self.recurrence is Recurrence.SPECIFIC_DAYS and not self.days:
            raise ValidationError("specific_days reminder needs at least one weekday")
        if self.recurrence is Recurrence.INTERVAL:
            if self.interval_days is None or int(self.interval_days) < 1:
                raise ValidationError("interval reminder needs interval_days >= 1")
        if self.start_date is not None and self.end_date is not None and self.end_date < self.start_date:
            raise ValidationError("reminder end_date is before start_date")

    def is_expired(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < to_ts(now)

    def should_arm(self, now: datetime) -> bool:
        return (
            self.is_active
            and self.enabled
            and self.notification_enabled
            and self.recurrence is not Recurrence.AS_NEEDED
            and not self.is_expired(now)
        )

    def slot_on(self, day: date) -> datetime:
        """Nominal fire time of this reminder on the given calendar day."""
        return datetime.combine(day, self.time_of_day)


@dataclass
class HistoryEntry:
    entry_id: str
    med_id: str
    user_id: str
    reminder_id: Optional[str]
    scheduled_time: int
    actual_time: Optional[int]
    status: IntakeStatus
    late_by_minutes: int = 0
    notes: Optional[str] = None
    created_at: Optional[int] = None
    medicine_name: Optional[str] = None

    def __post_init__(self):
        self.status = coerce_enum(IntakeStatus, self.status, "status")


@dataclass(frozen=True)
class AdherenceStats:
    total: int = 0
    taken: int = 0
    skipped: int = 0
    missed: int = 0
    rate: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "taken": self.taken,
            "skipped": self.skipped,
            "missed": self.missed,
            "rate": self.rate,
        }
