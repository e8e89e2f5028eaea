# medreminder/ledger.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from .config import DEFAULT_HISTORY_LIMIT, DEFAULT_STATS_WINDOW_DAYS, MISSED_GRACE_MINUTES
from .errors import ValidationError
from .models import AdherenceStats, HistoryEntry, IntakeStatus, Reminder, coerce_enum, to_ts
from .today import is_due_on

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
MISSED_NOTE = "no response before grace period ended"


def _stats(counts) -> AdherenceStats:
    total = counts["total"]
    rate = round(counts["taken"] / total * 100, 1) if total > 0 else 0.0
    return AdherenceStats(
        total=total, taken=counts["taken"], skipped=counts["skipped"], missed=counts["missed"], rate=rate,
    )


class AdherenceLedger:
    """Append-only intake log and the statistics derived from it."""

    def __init__(self, db, grace_minutes: int = MISSED_GRACE_MINUTES):
        self.db = db
        self.grace_minutes = int(grace_minutes)

    def log_intake(self, med_id: str, reminder_id: Optional[str], scheduled_time: Union[datetime, int],
                   status, note: str = "", now: Optional[datetime] = None) -> str:
        status = coerce_enum(IntakeStatus, status, "status")
        now = now or datetime.now()
        med = self.db.get_medicine(med_id)
        if med is None:
            raise ValidationError(f"unknown medicine {med_id!r}")

        sched_ts = to_ts(scheduled_time) if isinstance(scheduled_time, datetime) else int(scheduled_time)
        now_ts = to_ts(now)
        if status is IntakeStatus.MISSED:
            late, actual = 0, None
        else:
            late, actual = max(0, (now_ts - sched_ts) // 60), now_ts

        entry_id = self.db.log_history(HistoryEntry(
            entry_id="",
            med_id=med_id,
            user_id=med.user_id,
            reminder_id=reminder_id,
            scheduled_time=sched_ts,
            actual_time=actual,
            status=status,
            late_by_minutes=late,
            notes=note or None,
        ))
        logger.info(f"intake log: med={med_id} reminder={reminder_id} {status.value} late={late}m")
        return entry_id

    def mark_taken(self, reminder: Reminder, note: str = "", now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return self.log_intake(reminder.med_id, reminder.reminder_id, reminder.slot_on(now.date()),
                               IntakeStatus.TAKEN, note, now)

    def mark_skipped(self, reminder: Reminder, note: str = "", now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return self.log_intake(reminder.med_id, reminder.reminder_id, reminder.slot_on(now.date()),
                               IntakeStatus.SKIPPED, note, now)

    def log_manual(self, med_id: str, status=IntakeStatus.TAKEN, note: str = "",
                   now: Optional[datetime] = None) -> str:
        """Intake with no reminder behind it (as-needed doses, acted-on snoozes)."""
        now = now or datetime.now()
        return self.log_intake(med_id, None, now, status, note, now)

    # -------------------------
    # Statistics
    # -------------------------
    def get_stats(self, user_id: str, window_days: int = DEFAULT_STATS_WINDOW_DAYS,
                  now: Optional[datetime] = None) -> AdherenceStats:
        cutoff = to_ts(now or datetime.now()) - int(window_days) * SECONDS_PER_DAY
        return _stats(self.db.adherence_counts(cutoff, user_id=user_id))

    def get_medicine_stats(self, med_id: str, window_days: int = DEFAULT_STATS_WINDOW_DAYS,
                           now: Optional[datetime] = None) -> AdherenceStats:
        cutoff = to_ts(now or datetime.now()) - int(window_days) * SECONDS_PER_DAY
        return _stats(self.db.adherence_counts(cutoff, med_id=med_id))

    def get_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[HistoryEntry]:
        return self.db.get_history(user_id, limit)

    def get_history_by_medicine(self, med_id: str, limit: int = 30) -> List[HistoryEntry]:
        return self.db.get_history_by_medicine(med_id, limit)

    def get_history_by_range(self, user_id: str, start: datetime, end: datetime) -> List[HistoryEntry]:
        return self.db.get_history_by_range(user_id, to_ts(start), to_ts(end))

    # -------------------------
    # Missed-dose sweep
    # -------------------------
    def sweep_missed(self, now: Optional[datetime] = None, grace_minutes: Optional[int] = None) -> int:
        """
        Log `missed` for today's daily/specific-days slots that passed more than
        `grace_minutes` ago with nothing logged against them. Only today's
        slots are considered; running it twice logs nothing new.
        """
        now = now or datetime.now()
        grace = timedelta(minutes=self.grace_minutes if grace_minutes is None else int(grace_minutes))
        today = now.date()
        logged = 0
        for rem, med in self.db.get_schedulable():
            if not rem.enabled or not is_due_on(rem, today):
                continue
            slot = rem.slot_on(today)
            slot_ts = to_ts(slot)
            if slot + grace > now:
                continue
            if (rem.start_date is not None and rem.start_date > slot_ts) or rem.is_expired(slot):
                continue
            if self.db.history_exists(rem.reminder_id, slot_ts):
                continue
            self.log_intake(med.med_id, rem.reminder_id, slot_ts, IntakeStatus.MISSED, MISSED_NOTE, now)
            logged += 1
        if logged:
            logger.info(f"missed sweep: logged {logged} missed dose(s)")
        return logged
