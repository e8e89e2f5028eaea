# medreminder/scheduler.py
#
# Owns the armed trigger set. Holds no handle lists of its own: every
# retract enumerates the host's bookings and filters by tag, and the
# persisted reminders table is the source of truth for what should be armed.
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock, RLock
from typing import Any, Dict, List, Optional, Tuple

from .config import NOTIFICATION_TITLE
from .errors import SchedulingError
from .host import NotificationContent, NotificationHost, ScheduledNotification
from .models import Medicine, Reminder, TriggerKind, to_ts
from .triggers import TriggerSpec, derive_triggers, next_fire_time

logger = logging.getLogger(__name__)


def make_tag(reminder_id: Optional[str], med_id: str, kind: TriggerKind) -> Dict[str, Any]:
    return {"reminder_id": reminder_id, "med_id": med_id, "kind": kind.value}


def reminder_content(reminder: Reminder, medicine: Medicine, tag: Dict[str, Any]) -> NotificationContent:
    return NotificationContent(
        title=NOTIFICATION_TITLE,
        body=f"Take your {medicine.display_name}",
        sound=reminder.sound,
        data=dict(tag),
    )


def _same_bookings(current: List[ScheduledNotification], specs: List[TriggerSpec],
                   content: NotificationContent) -> bool:
    if len(current) != len(specs) or len(set(specs)) != len(specs):
        return False
    return {n.trigger for n in current} == set(specs) and all(n.content == content for n in current)


class KeyedLocks:
    """RLock per key; an entry lives only while someone holds or waits on it."""

    def __init__(self):
        self._guard = Lock()
        self._locks: Dict[str, list] = {}  # key -> [RLock, holders]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


@dataclass
class ReconcileReport:
    armed: Dict[str, int] = field(default_factory=dict)    # reminder_id -> trigger count
    failed: Dict[str, str] = field(default_factory=dict)   # reminder_id -> error
    retracted: int = 0
    stray_error: Optional[str] = None                      # host could not list/cancel strays

    @property
    def ok(self) -> bool:
        return not self.failed and self.stray_error is None


class NotificationScheduler:
    def __init__(self, host: NotificationHost, db=None):
        self.host = host
        self.db = db
        self._locks = KeyedLocks()

    @contextmanager
    def locked(self, reminder_id: Optional[str]):
        """Per-reminder mutual exclusion; reentrant so callers can wrap persist + rearm."""
        if reminder_id is None:
            yield
            return
        with self._locks.hold(reminder_id):
            yield

    @contextmanager
    def medicine_locked(self, med_id: str):
        """Serializes reminder creation against the medicine's delete cascade. Take it before any reminder lock."""
        with self._locks.hold(f"medicine:{med_id}"):
            yield

    # -------------------------
    # Primitives
    # -------------------------
    def book(self, trigger: TriggerSpec, tag: Dict[str, Any], content: NotificationContent) -> str:
        return self.host.schedule(trigger, tag, content)

    def armed(self, reminder_id: Optional[str] = None, med_id: Optional[str] = None,
              kind: Optional[TriggerKind] = None) -> List[ScheduledNotification]:
        out = []
        for n in self.host.list_scheduled():
            tag = n.tag or {}
            if reminder_id is not None and tag.get("reminder_id") != reminder_id:
                continue
            if med_id is not None and tag.get("med_id") != med_id:
                continue
            if kind is not None and tag.get("kind") != kind.value:
                continue
            out.append(n)
        return out

    def _cancel(self, bookings: List[ScheduledNotification]) -> int:
        for n in bookings:
            self.host.cancel(n.handle)
        return len(bookings)

    def _retract_unlocked(self, reminder_id: str, include_snoozes: bool) -> int:
        kind = None if include_snoozes else TriggerKind.REMINDER
        return self._cancel(self.armed(reminder_id=reminder_id, kind=kind))

    # -------------------------
    # Arm / retract
    # -------------------------
    def arm(self, reminder: Reminder, medicine: Medicine, now: Optional[datetime] = None) -> List[str]:
        """
        Make the reminder's regular bookings match its derived specs. Bookings
        that already match (same triggers, same content) are kept as they are;
        otherwise they are retracted and one trigger per spec is booked.
        Calling it repeatedly never duplicates triggers or moves fire times.
        Raises SchedulingError (after dropping any partial set) if the host refuses.
        """
        now = now or datetime.now()
        reminder.validate()
        armable = reminder.should_arm(now) and medicine.is_active
        specs = derive_triggers(reminder) if armable else []

        with self.locked(reminder.reminder_id):
            tag = make_tag(reminder.reminder_id, reminder.med_id, TriggerKind.REMINDER)
            content = reminder_content(reminder, medicine, tag)
            current = self.armed(reminder_id=reminder.reminder_id, kind=TriggerKind.REMINDER)
            if specs and _same_bookings(current, specs, content):
                handles = [n.handle for n in current]
                booked = False
            else:
                self._cancel(current)
                handles = self._book_all(reminder.reminder_id, specs, tag, content)
                booked = bool(handles)

            next_ts = to_ts(next_fire_time(reminder, now)) if specs else None
            if self.db is not None and reminder.next_trigger != next_ts:
                self.db.set_next_trigger(reminder.reminder_id, next_ts)
            reminder.next_trigger = next_ts

        if booked:
            logger.info(f"armed reminder={reminder.reminder_id} med={reminder.med_id} triggers={len(handles)}")
        return handles

    def _book_all(self, reminder_id: str, specs: List[TriggerSpec], tag: Dict[str, Any],
                  content: NotificationContent) -> List[str]:
        handles = []
        try:
            for spec in specs:
                handles.append(self.book(spec, tag, content))
        except SchedulingError:
            logger.warning(f"arm failed for reminder={reminder_id}; dropping {len(handles)} partial trigger(s)")
            try:
                self._retract_unlocked(reminder_id, include_snoozes=False)
            except SchedulingError:
                logger.exception(f"cleanup after failed arm also failed: reminder={reminder_id}")
            raise
        return handles

    def retract(self, reminder_id: str, include_snoozes: bool = False) -> int:
        with self.locked(reminder_id):
            n = self._retract_unlocked(reminder_id, include_snoozes)
        if n:
            logger.info(f"retracted reminder={reminder_id} triggers={n}")
        return n

    def retract_all(self, med_id: str) -> int:
        """Cancel every booking (regular and snooze) tagged with the medicine."""
        reminder_ids = {n.tag.get("reminder_id") for n in self.armed(med_id=med_id)}
        count = 0
        for rid in sorted(reminder_ids, key=lambda r: (r is None, r or "")):
            with self.locked(rid):
                # re-enumerate under the lock; the snapshot above may be stale
                count += self._cancel([
                    n for n in self.armed(reminder_id=rid, med_id=med_id)
                    if n.tag.get("reminder_id") == rid
                ])
        logger.info(f"retracted medicine={med_id} triggers={count}")
        return count

    def rearm(self, reminder: Reminder, medicine: Medicine, now: Optional[datetime] = None) -> List[str]:
        with self.locked(reminder.reminder_id):
            self.retract(reminder.reminder_id)
            return self.arm(reminder, medicine, now)

    # -------------------------
    # Reconciliation
    # -------------------------
    def _live_pair(self, reminder_id: Optional[str]) -> Optional[Tuple[Reminder, Medicine]]:
        rem = self.db.get_reminder(reminder_id) if reminder_id is not None else None
        if rem is None or not rem.is_active:
            return None
        med = self.db.get_medicine(rem.med_id)
        if med is None or not med.is_active:
            return None
        return rem, med

    def _still_wanted(self, reminder_id: Optional[str], now: datetime) -> bool:
        pair = self._live_pair(reminder_id)
        return pair is not None and pair[0].should_arm(now)

    def _drop_strays(self, wanted: set, live: set, now: datetime) -> int:
        dropped = 0
        for n in self.armed():
            rid = n.tag.get("reminder_id")
            snooze = n.tag.get("kind") == TriggerKind.SNOOZE.value
            if rid in (live if snooze else wanted):
                continue
            with self.locked(rid):
                # re-check under the lock; a concurrent add may have just persisted it
                if snooze and self._live_pair(rid) is not None:
                    continue
                if not snooze and self._still_wanted(rid, now):
                    continue
                self.host.cancel(n.handle)
                dropped += 1
        return dropped

    def reconcile_all(self, now: Optional[datetime] = None) -> ReconcileReport:
        """
        Re-derive the whole armed set from the reminders table: drop regular
        triggers nothing persisted wants any more (and snoozes whose reminder
        or medicine is gone), then re-arm every live reminder. Safe to run any
        number of times; used at startup and as the recovery path after an
        interrupted retract/arm.
        """
        if self.db is None:
            raise RuntimeError("reconcile_all needs a store")
        now = now or datetime.now()
        report = ReconcileReport()
        pairs = self.db.get_schedulable()
        wanted = {rem.reminder_id for rem, med in pairs if rem.should_arm(now)}
        live = {rem.reminder_id for rem, med in pairs}

        try:
            report.retracted = self._drop_strays(wanted, live, now)
        except SchedulingError as exc:
            # strays stay booked until the next pass; arming still goes ahead
            report.stray_error = str(exc)
            logger.warning(f"reconcile: stray retraction failed: {exc}")

        for rem, _ in pairs:
            try:
                with self.locked(rem.reminder_id):
                    # the snapshot may predate an edit or delete that finished meanwhile
                    fresh = self._live_pair(rem.reminder_id)
                    if fresh is None:
                        continue
                    report.armed[rem.reminder_id] = len(self.arm(*fresh, now))
            except SchedulingError as exc:
                report.failed[rem.reminder_id] = str(exc)
                logger.warning(f"reconcile: reminder={rem.reminder_id} not armed: {exc}")

        logger.info(
            f"reconciled reminders={len(pairs)} triggers={sum(report.armed.values())} "
            f"stray_retracted={report.retracted} failed={len(report.failed)}"
        )
        return report

    def send_test_notification(self, medicine: Medicine):
        tag = make_tag(None, medicine.med_id, TriggerKind.REMINDER)
        self.host.fire_now(
            NotificationContent(title=NOTIFICATION_TITLE, body=f"Take your {medicine.display_name}", data=tag),
            tag,
        )
