# medreminder/service.py
#
# Mutation paths: validate -> persist -> (re)arm. Store failures propagate;
# host failures never undo persisted state and come back as a warning.
import dataclasses
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import MAX_REMINDERS_PER_MEDICINE
from .db import MedicineDB
from .errors import SchedulingError, ValidationError
from .models import DaySet, Medicine, Reminder, User, to_ts
from .scheduler import NotificationScheduler
from .today import todays_remaining

logger = logging.getLogger(__name__)

_REMINDER_FIELDS = {
    "time_of_day", "days", "recurrence", "interval_days", "enabled", "notification_enabled",
    "sound", "snooze_enabled", "start_date", "end_date",
}
_MEDICINE_FIELDS = {
    "verified_name", "generic_name", "brand_name", "manufacturer", "category", "form",
    "strength", "custom_name", "notes", "api_source", "api_id",
}
_DISPLAY_FIELDS = {"verified_name", "custom_name"}


@dataclass
class MutationResult:
    reminder_id: str
    armed: bool = True
    triggers: int = 0
    warning: Optional[str] = None


@dataclass
class DeleteResult:
    med_id: str
    retracted: int = 0
    warning: Optional[str] = None


class ReminderService:
    def __init__(self, db: MedicineDB, scheduler: NotificationScheduler,
                 max_reminders_per_medicine: int = MAX_REMINDERS_PER_MEDICINE):
        self.db = db
        self.scheduler = scheduler
        self.max_reminders_per_medicine = int(max_reminders_per_medicine)

    # -------------------------
    # Users
    # -------------------------
    def ensure_local_user(self, name: str = "User") -> User:
        user = self.db.first_user()
        if user is None:
            user_id = self.db.create_user(User(user_id="", name=name))
            user = self.db.get_user(user_id)
            logger.info(f"created local profile user={user_id}")
        return user

    def update_settings(self, user_id: str, settings: Dict[str, Any]) -> User:
        user = self.db.get_user(user_id)
        if user is None:
            raise ValidationError(f"unknown user {user_id!r}")
        merged = dict(user.settings)
        merged.update(settings)
        self.db.update_user(user_id, settings=merged)
        return self.db.get_user(user_id)

    # -------------------------
    # Medicines
    # -------------------------
    def _live_medicine(self, med_id: str) -> Medicine:
        med = self.db.get_medicine(med_id)
        if med is None or not med.is_active:
            raise ValidationError(f"unknown or deleted medicine {med_id!r}")
        return med

    def add_medicine(self, user_id: str, verified_name: str, **fields) -> str:
        unknown = set(fields) - _MEDICINE_FIELDS
        if unknown:
            raise ValidationError(f"unknown medicine fields: {sorted(unknown)}")
        med = Medicine(med_id="", user_id=user_id, verified_name=(verified_name or "").strip(), **fields)
        med.validate()
        med_id = self.db.add_medicine(med)
        logger.info(f"added medicine id={med_id} name={med.display_name} source={med.api_source}")
        return med_id

    def update_medicine(self, med_id: str, now: Optional[datetime] = None, **fields) -> List[MutationResult]:
        unknown = set(fields) - _MEDICINE_FIELDS
        if unknown:
            raise ValidationError(f"unknown medicine fields: {sorted(unknown)}")
        with self.scheduler.medicine_locked(med_id):
            med = dataclasses.replace(self._live_medicine(med_id), **fields)
            med.validate()
            self.db.update_medicine(med_id, **fields)
            logger.info(f"updated medicine id={med_id} fields={sorted(fields)}")

            # notification text carries the medicine name
            if not _DISPLAY_FIELDS & set(fields):
                return []
            return [self._arm(rem, med, now) for rem in self.db.get_reminders_by_medicine(med_id)]

    def get_medicines(self, user_id: str) -> List[Medicine]:
        return self.db.get_medicines(user_id)

    def search_medicines(self, user_id: str, term: str) -> List[Medicine]:
        if not term or not term.strip():
            return []
        return self.db.search_medicines(user_id, term.strip())

    def _cascade(self, med_id: str, remove) -> DeleteResult:
        # caller holds the medicine lock
        with ExitStack() as stack:
            reminder_ids = sorted(r.reminder_id for r in self.db.get_reminders_by_medicine(med_id, active_only=False))
            for rid in reminder_ids:
                stack.enter_context(self.scheduler.locked(rid))
            result = DeleteResult(med_id)
            # triggers go first; a failed row write can simply be retried
            try:
                result.retracted = self.scheduler.retract_all(med_id)
            except SchedulingError as exc:
                # the row write still happens; the next reconcile drops the strays
                result.warning = str(exc)
                logger.warning(f"medicine={med_id} triggers not retracted: {exc}")
            remove(med_id)
        return result

    def delete_medicine(self, med_id: str) -> DeleteResult:
        """
        Soft delete. Retracts every trigger tagged with the medicine, removes
        its reminder rows (history.reminder_id is nulled) and clears is_active.
        History stays attributed to the medicine. A host failure during the
        retraction comes back as a warning instead of blocking the delete.
        """
        with self.scheduler.medicine_locked(med_id):
            self._live_medicine(med_id)
            result = self._cascade(med_id, self.db.deactivate_medicine)
        logger.info(f"deleted medicine id={med_id} retracted={result.retracted}")
        return result

    def purge_medicine(self, med_id: str) -> DeleteResult:
        """Hard delete; reminders and history rows cascade away with the medicine."""
        with self.scheduler.medicine_locked(med_id):
            if self.db.get_medicine(med_id) is None:
                raise ValidationError(f"unknown medicine {med_id!r}")
            result = self._cascade(med_id, self.db.purge_medicine)
        logger.info(f"purged medicine id={med_id} retracted={result.retracted}")
        return result

    # -------------------------
    # Reminders
    # -------------------------
    def _arm(self, rem: Reminder, med: Medicine, now: Optional[datetime]) -> MutationResult:
        try:
            handles = self.scheduler.arm(rem, med, now)
        except SchedulingError as exc:
            logger.warning(f"reminder={rem.reminder_id} saved but not armed: {exc}")
            return MutationResult(rem.reminder_id, armed=False, warning=str(exc))
        return MutationResult(rem.reminder_id, armed=True, triggers=len(handles))

    def add_reminder(self, user_id: str, med_id: str, time_of_day, recurrence="daily",
                     days=None, interval_days: Optional[int] = None, now: Optional[datetime] = None,
                     **options) -> MutationResult:
        unknown = set(options) - _REMINDER_FIELDS
        if unknown:
            raise ValidationError(f"unknown reminder fields: {sorted(unknown)}")
        now = now or datetime.now()
        rem = Reminder(
            reminder_id="",
            med_id=med_id,
            user_id=user_id,
            time_of_day=time_of_day,
            days=DaySet.every_day() if days is None else days,
            recurrence=recurrence,
            interval_days=interval_days,
            **options,
        )
        if rem.start_date is None:
            rem.start_date = to_ts(now)
        rem.validate()
        # a concurrent delete_medicine either finishes first (and we refuse) or sees this row
        with self.scheduler.medicine_locked(med_id):
            med = self._live_medicine(med_id)
            if self.db.count_reminders(med_id) >= self.max_reminders_per_medicine:
                raise ValidationError(f"medicine {med_id!r} already has {self.max_reminders_per_medicine} reminders")

            rem.reminder_id = self.db.add_reminder(rem)
            logger.info(f"added reminder id={rem.reminder_id} med={med_id} {rem.recurrence.value} @ {time_of_day}")
            return self._arm(rem, med, now)

    def update_reminder(self, reminder_id: str, now: Optional[datetime] = None, **changes) -> MutationResult:
        unknown = set(changes) - _REMINDER_FIELDS
        if unknown:
            raise ValidationError(f"unknown reminder fields: {sorted(unknown)}")
        with self.scheduler.locked(reminder_id):
            current = self.db.get_reminder(reminder_id)
            if current is None or not current.is_active:
                raise ValidationError(f"unknown or deleted reminder {reminder_id!r}")
            updated = dataclasses.replace(current, **changes)
            updated.validate()
            med = self._live_medicine(updated.med_id)

            self.db.update_reminder(updated)
            try:
                handles = self.scheduler.rearm(updated, med, now)
            except SchedulingError as exc:
                logger.warning(f"reminder={reminder_id} updated but not re-armed: {exc}")
                return MutationResult(reminder_id, armed=False, warning=str(exc))
        logger.info(f"updated reminder id={reminder_id} fields={sorted(changes)}")
        return MutationResult(reminder_id, armed=True, triggers=len(handles))

    def set_reminder_enabled(self, reminder_id: str, enabled: bool, now: Optional[datetime] = None) -> MutationResult:
        return self.update_reminder(reminder_id, now=now, enabled=bool(enabled))

    def delete_reminder(self, reminder_id: str) -> MutationResult:
        """Soft delete; regular and snoozed triggers are retracted first."""
        with self.scheduler.locked(reminder_id):
            if self.db.get_reminder(reminder_id) is None:
                raise ValidationError(f"unknown reminder {reminder_id!r}")
            warning = None
            try:
                self.scheduler.retract(reminder_id, include_snoozes=True)
            except SchedulingError as exc:
                # the next reconcile drops the stray bookings
                warning = str(exc)
                logger.warning(f"reminder={reminder_id} deleted but triggers not retracted: {exc}")
            self.db.soft_delete_reminder(reminder_id)
        logger.info(f"deleted reminder id={reminder_id}")
        return MutationResult(reminder_id, armed=warning is None, warning=warning)

    def list_reminders(self, user_id: str, order_by: str = "time") -> List[Reminder]:
        return self.db.get_reminders(user_id, order_by=order_by)

    def todays_remaining(self, user_id: str, now: Optional[datetime] = None) -> List[Reminder]:
        return todays_remaining(self.db.get_reminders(user_id), now)
