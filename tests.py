import logging
import os
import tempfile
import threading
import unittest
from datetime import date, datetime, time as dtime, timedelta
from pathlib import Path
from unittest import mock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medreminder.android_alarms import AndroidAlarmHost
from medreminder.background import BackgroundSweeper
from medreminder.config import Settings
from medreminder.crypto import aes_decrypt, aes_encrypt, get_or_create_key
from medreminder.db import MedicineDB
from medreminder.engine import build_engine
from medreminder.errors import PersistenceError, SchedulingError, ValidationError
from medreminder.host import NotificationContent, SimulatedHost
from medreminder.logs import FileAndRingHandler, RingLog, clear_log
from medreminder.models import (
    DaySet, IntakeStatus, Medicine, Recurrence, Reminder, TriggerKind, Weekday, to_ts,
)
from medreminder.scheduler import KeyedLocks, NotificationScheduler
from medreminder.snooze import SnoozeChannel
from medreminder.today import todays_remaining
from medreminder.triggers import (
    DailyTrigger, IntervalTrigger, WeeklyTrigger, calendar_weekday, derive_triggers,
    host_weekday, next_fire_time, next_occurrence, trigger_from_dict, trigger_to_dict,
)

# today at 09:00, so start_date/now line up with the real calendar day
NOW = datetime.now().replace(hour=9, minute=0, second=0, microsecond=0)
SUNDAY = date(2024, 1, 7)


def _reminder(rid="rem_1", med_id="med_1", at="08:00", recurrence="daily", days=None, **kw) -> Reminder:
    return Reminder(
        reminder_id=rid,
        med_id=med_id,
        user_id="user_1",
        time_of_day=at,
        recurrence=recurrence,
        days=DaySet.every_day() if days is None else DaySet(days),
        **kw,
    )


def _medicine(med_id="med_1", name="Aspirin") -> Medicine:
    return Medicine(med_id=med_id, user_id="user_1", verified_name=name)


class _EngineCase(unittest.TestCase):
    host_factory = SimulatedHost

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.base = Path(self._td.name)
        self.settings = Settings(base_dir=self.base)
        self.key = AESGCM.generate_key(bit_length=256)
        self.host = self.host_factory()
        self.engine = build_engine(self.settings, key=self.key, host=self.host)
        self.service = self.engine.service
        self.scheduler = self.engine.scheduler
        self.ledger = self.engine.ledger
        self.user_id = self.service.ensure_local_user().user_id
        self.med_id = self.service.add_medicine(self.user_id, "Aspirin", strength="100mg")

    def tearDown(self):
        self._td.cleanup()

    def regular(self, reminder_id=None, med_id=None):
        return self.scheduler.armed(reminder_id=reminder_id, med_id=med_id, kind=TriggerKind.REMINDER)


# -------------------------
# Crypto / store
# -------------------------
class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        self.assertEqual(pt, aes_decrypt(aes_encrypt(pt, key), key))

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            key_path = Path(td) / ".enc_key"
            k1 = get_or_create_key(key_path)
            k2 = get_or_create_key(key_path)
            self.assertEqual(32, len(k1))
            self.assertEqual(k1, k2)

    def test_wrong_key_is_persistence_error(self):
        with tempfile.TemporaryDirectory() as td:
            s = Settings(base_dir=Path(td))
            MedicineDB(AESGCM.generate_key(bit_length=256), s.db_path, s.tmp_dir)
            with self.assertRaises(PersistenceError):
                MedicineDB(AESGCM.generate_key(bit_length=256), s.db_path, s.tmp_dir)

    def test_db_file_is_ciphertext(self):
        with tempfile.TemporaryDirectory() as td:
            s = Settings(base_dir=Path(td))
            db = MedicineDB(AESGCM.generate_key(bit_length=256), s.db_path, s.tmp_dir)
            self.assertFalse(s.db_path.read_bytes().startswith(b"SQLite format 3"))
            self.assertEqual([], list(s.tmp_dir.iterdir()))
            self.assertIsNone(db.first_user())


# -------------------------
# Weekdays / triggers
# -------------------------
class TestWeekdays(unittest.TestCase):
    def test_weekday_of(self):
        self.assertIs(Weekday.SUNDAY, Weekday.of(SUNDAY))
        self.assertIs(Weekday.SATURDAY, Weekday.of(SUNDAY + timedelta(days=6)))

    def test_host_mapping_is_bijection(self):
        self.assertEqual(1, host_weekday(Weekday.SUNDAY))
        self.assertEqual(7, host_weekday(Weekday.SATURDAY))
        for wd in Weekday:
            self.assertIs(wd, calendar_weekday(host_weekday(wd)))
        self.assertEqual(list(range(1, 8)), sorted(host_weekday(wd) for wd in Weekday))

    def test_host_weekday_out_of_range(self):
        for bad in (0, 8):
            with self.assertRaises(ValueError):
                calendar_weekday(bad)

    def test_dayset(self):
        ds = DaySet([Weekday.FRIDAY, 1, Weekday.MONDAY])
        self.assertEqual([Weekday.MONDAY, Weekday.FRIDAY], list(ds))
        self.assertEqual(2, len(ds))
        self.assertIn(5, ds)
        self.assertNotIn(0, ds)
        self.assertEqual(ds, DaySet.from_mask(ds.mask))
        self.assertEqual(7, len(DaySet.every_day()))
        self.assertFalse(DaySet())
        with self.assertRaises(ValidationError):
            DaySet([7])


class TestTriggers(unittest.TestCase):
    def test_daily(self):
        self.assertEqual([DailyTrigger(hour=8, minute=30)], derive_triggers(_reminder(at="08:30")))

    def test_specific_days_one_trigger_per_day(self):
        rem = _reminder(recurrence="specific_days",
                        days=[Weekday.SATURDAY, Weekday.SUNDAY, Weekday.WEDNESDAY], at="21:05")
        specs = derive_triggers(rem)
        self.assertEqual(3, len(specs))
        self.assertEqual([1, 4, 7], [s.weekday for s in specs])
        self.assertTrue(all(isinstance(s, WeeklyTrigger) and (s.hour, s.minute) == (21, 5) for s in specs))

    def test_interval(self):
        rem = _reminder(recurrence="interval", interval_days=3)
        self.assertEqual([IntervalTrigger(seconds=3 * 86400)], derive_triggers(rem))

    def test_as_needed_has_no_triggers(self):
        self.assertEqual([], derive_triggers(_reminder(recurrence="as_needed")))

    def test_invalid_configurations(self):
        with self.assertRaises(ValidationError):
            derive_triggers(_reminder(recurrence="specific_days", days=[]))
        with self.assertRaises(ValidationError):
            derive_triggers(_reminder(recurrence="interval", interval_days=0))
        with self.assertRaises(ValidationError):
            derive_triggers(_reminder(recurrence="interval"))
        with self.assertRaises(ValidationError):
            _reminder(at="25:99")
        with self.assertRaises(ValidationError):
            _reminder(recurrence="hourly")

    def test_next_fire_time(self):
        at_nine = datetime.combine(SUNDAY, dtime(9, 0))
        self.assertEqual(datetime.combine(SUNDAY + timedelta(days=1), dtime(8, 0)),
                         next_fire_time(_reminder(at="08:00"), at_nine))
        self.assertEqual(datetime.combine(SUNDAY, dtime(10, 0)),
                         next_fire_time(_reminder(at="10:00"), at_nine))

        weekly = _reminder(recurrence="specific_days", days=[Weekday.SUNDAY, Weekday.TUESDAY], at="08:00")
        self.assertEqual(datetime.combine(SUNDAY + timedelta(days=2), dtime(8, 0)),
                         next_fire_time(weekly, at_nine))
        self.assertIsNone(next_fire_time(_reminder(recurrence="as_needed"), at_nine))

    def test_trigger_dict_roundtrip(self):
        for spec in (DailyTrigger(8, 0), WeeklyTrigger(3, 7, 15), IntervalTrigger(900, repeats=False),
                     IntervalTrigger(86400, anchor=1700000000)):
            self.assertEqual(spec, trigger_from_dict(trigger_to_dict(spec)))

    def test_anchored_interval_does_not_drift(self):
        anchor = datetime.combine(SUNDAY, dtime(9, 0))
        spec = IntervalTrigger(seconds=2 * 86400, anchor=to_ts(anchor))
        due = anchor + timedelta(days=2)
        for now in (anchor, anchor + timedelta(hours=5), anchor + timedelta(days=1, hours=23)):
            self.assertEqual(due, next_occurrence(spec, now, booked_at=now))
        self.assertEqual(due + timedelta(days=2), next_occurrence(spec, due))

    def test_interval_anchors_on_start_date(self):
        start = to_ts(datetime.combine(SUNDAY, dtime(9, 0)))
        rem = _reminder(recurrence="interval", interval_days=2, start_date=start)
        self.assertEqual([IntervalTrigger(seconds=2 * 86400, anchor=start)], derive_triggers(rem))


# -------------------------
# Scheduler (no store)
# -------------------------
class TestScheduler(unittest.TestCase):
    def setUp(self):
        self.host = SimulatedHost()
        self.scheduler = NotificationScheduler(self.host)
        self.med = _medicine()

    def test_arm_is_idempotent(self):
        rem = _reminder(recurrence="specific_days", days=[1, 3, 5])
        for _ in range(3):
            self.scheduler.arm(rem, self.med, NOW)
        self.assertEqual(3, len(self.scheduler.armed(reminder_id="rem_1")))
        self.assertEqual(3, len(self.host.list_scheduled()))

    def test_tags_and_content(self):
        rem = _reminder()
        self.scheduler.arm(rem, self.med, NOW)
        (n,) = self.host.list_scheduled()
        self.assertEqual({"reminder_id": "rem_1", "med_id": "med_1", "kind": "reminder"}, n.tag)
        self.assertEqual("Take your Aspirin", n.content.body)
        self.assertEqual(to_ts(datetime.combine(NOW.date() + timedelta(days=1), dtime(8, 0))), rem.next_trigger)

    def test_disabled_and_as_needed_not_armed(self):
        self.assertEqual([], self.scheduler.arm(_reminder(enabled=False), self.med, NOW))
        self.assertEqual([], self.scheduler.arm(_reminder(rid="rem_2", recurrence="as_needed"), self.med, NOW))
        self.assertEqual([], self.scheduler.arm(_reminder(rid="rem_3", notification_enabled=False), self.med, NOW))
        self.assertEqual([], self.host.list_scheduled())

    def test_expired_not_armed(self):
        rem = _reminder(start_date=to_ts(NOW - timedelta(days=10)), end_date=to_ts(NOW - timedelta(days=1)))
        self.assertEqual([], self.scheduler.arm(rem, self.med, NOW))

    def test_retract_and_rearm(self):
        rem = _reminder()
        other = _reminder(rid="rem_2", at="20:00")
        self.scheduler.arm(rem, self.med, NOW)
        self.scheduler.arm(other, self.med, NOW)

        self.assertEqual(1, self.scheduler.retract("rem_1"))
        self.assertEqual([], self.scheduler.armed(reminder_id="rem_1"))
        self.assertEqual(1, len(self.scheduler.armed(reminder_id="rem_2")))
        self.assertEqual(0, self.scheduler.retract("rem_1"))

        rem.recurrence = Recurrence.SPECIFIC_DAYS
        rem.days = DaySet([0, 6])
        self.scheduler.rearm(rem, self.med, NOW)
        self.assertEqual(2, len(self.scheduler.armed(reminder_id="rem_1")))

    def test_retract_all_for_medicine(self):
        self.scheduler.arm(_reminder(rid="rem_a"), self.med, NOW)
        self.scheduler.arm(_reminder(rid="rem_b", recurrence="specific_days", days=[2, 4]), self.med, NOW)
        self.scheduler.arm(_reminder(rid="rem_c", med_id="med_2"), _medicine("med_2", "Ibuprofen"), NOW)
        self.assertEqual(3, self.scheduler.retract_all("med_1"))
        self.assertEqual(["med_2"], [n.tag["med_id"] for n in self.host.list_scheduled()])

    def test_permission_denied(self):
        self.host.permission = False
        with self.assertRaises(SchedulingError):
            self.scheduler.arm(_reminder(), self.med, NOW)
        self.assertEqual([], self.host.list_scheduled())

    def test_partial_failure_leaves_nothing_armed(self):
        host = _FailingHost(fail_on=2)
        scheduler = NotificationScheduler(host)
        with self.assertRaises(SchedulingError):
            scheduler.arm(_reminder(recurrence="specific_days", days=[1, 2, 3]), self.med, NOW)
        self.assertEqual([], host.list_scheduled())

    def test_send_test_notification(self):
        self.scheduler.send_test_notification(self.med)
        self.assertEqual(["Take your Aspirin"], [c.body for c in self.host.fired])
        self.assertEqual([], self.host.list_scheduled())

    def test_unchanged_reminder_keeps_its_bookings(self):
        rem = _reminder(recurrence="specific_days", days=[1, 3])
        first = sorted(self.scheduler.arm(rem, self.med, NOW))
        self.assertEqual(first, sorted(self.scheduler.arm(rem, self.med, NOW + timedelta(hours=3))))
        self.scheduler.arm(rem, _medicine(name="Renamed"), NOW)
        renamed = self.scheduler.armed(reminder_id="rem_1")
        self.assertEqual(2, len(renamed))
        self.assertFalse(set(first) & {n.handle for n in renamed})


class _FailingHost(SimulatedHost):
    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def schedule(self, trigger, tag, content):
        self.calls += 1
        if self.calls == self.fail_on:
            raise SchedulingError("host rejected booking")
        return super().schedule(trigger, tag, content)


# -------------------------
# Snooze
# -------------------------
class TestSnooze(unittest.TestCase):
    def setUp(self):
        self.host = SimulatedHost()
        self.scheduler = NotificationScheduler(self.host)
        self.snoozer = SnoozeChannel(self.scheduler, default_minutes=15)
        self.med = _medicine()
        self.rem = _reminder()
        self.scheduler.arm(self.rem, self.med, NOW)

    def test_snooze_leaves_regular_triggers_alone(self):
        handle = self.snoozer.snooze(self.rem, self.med, 10)
        self.assertEqual(1, len(self.scheduler.armed(reminder_id="rem_1", kind=TriggerKind.REMINDER)))
        (snoozed,) = self.scheduler.armed(reminder_id="rem_1", kind=TriggerKind.SNOOZE)
        self.assertEqual(handle, snoozed.handle)
        self.assertEqual("snooze", snoozed.tag["kind"])
        self.assertEqual(IntervalTrigger(seconds=600, repeats=False), snoozed.trigger)

    def test_default_delay(self):
        self.snoozer.snooze(self.rem, self.med)
        (snoozed,) = self.scheduler.armed(kind=TriggerKind.SNOOZE)
        self.assertEqual(15 * 60, snoozed.trigger.seconds)

    def test_rearm_keeps_snooze(self):
        self.snoozer.snooze(self.rem, self.med, 5)
        self.scheduler.rearm(self.rem, self.med, NOW)
        self.assertEqual(1, len(self.scheduler.armed(kind=TriggerKind.SNOOZE)))
        self.scheduler.retract("rem_1", include_snoozes=True)
        self.assertEqual([], self.host.list_scheduled())

    def test_invalid_snooze(self):
        with self.assertRaises(ValidationError):
            self.snoozer.snooze(self.rem, self.med, 0)
        self.rem.snooze_enabled = False
        with self.assertRaises(ValidationError):
            self.snoozer.snooze(self.rem, self.med, 5)

    def test_retired_reminder_or_medicine_cannot_snooze(self):
        gone = Medicine(med_id="med_1", user_id="user_1", verified_name="Aspirin", is_active=False)
        cases = [
            (_reminder(is_active=False), self.med),
            (_reminder(enabled=False), self.med),
            (self.rem, gone),
        ]
        for rem, med in cases:
            with self.assertRaises(ValidationError):
                self.snoozer.snooze(rem, med, 5)
        self.assertEqual([], self.scheduler.armed(kind=TriggerKind.SNOOZE))


# -------------------------
# Today view
# -------------------------
class TestTodayView(unittest.TestCase):
    def test_only_future_slots(self):
        rems = [_reminder(rid="a", at="08:00"), _reminder(rid="b", at="10:00")]
        self.assertEqual(["b"], [r.reminder_id for r in todays_remaining(rems, NOW)])

    def test_sorted_and_same_minute_included(self):
        rems = [_reminder(rid="late", at="22:00"), _reminder(rid="now", at="09:00"), _reminder(rid="mid", at="13:30")]
        self.assertEqual(["now", "mid", "late"], [r.reminder_id for r in todays_remaining(rems, NOW)])

    def test_specific_days(self):
        today = Weekday.of(NOW)
        tomorrow = Weekday((int(today) + 1) % 7)
        rems = [
            _reminder(rid="today", at="12:00", recurrence="specific_days", days=[today]),
            _reminder(rid="tomorrow", at="12:00", recurrence="specific_days", days=[tomorrow]),
        ]
        self.assertEqual(["today"], [r.reminder_id for r in todays_remaining(rems, NOW)])

    def test_excluded_kinds(self):
        rems = [
            _reminder(rid="interval", at="12:00", recurrence="interval", interval_days=2),
            _reminder(rid="prn", at="12:00", recurrence="as_needed"),
            _reminder(rid="off", at="12:00", enabled=False),
            _reminder(rid="gone", at="12:00", is_active=False),
        ]
        self.assertEqual([], todays_remaining(rems, NOW))


# -------------------------
# Service + store
# -------------------------
class TestReminderService(_EngineCase):
    def test_add_reminder_arms_and_persists(self):
        res = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW)
        self.assertTrue(res.armed)
        self.assertEqual(1, res.triggers)
        stored = self.engine.db.get_reminder(res.reminder_id)
        self.assertEqual(dtime(8, 0), stored.time_of_day)
        self.assertEqual(to_ts(NOW), stored.start_date)
        self.assertEqual(to_ts(datetime.combine(NOW.date() + timedelta(days=1), dtime(8, 0))), stored.next_trigger)
        self.assertEqual(1, len(self.regular(res.reminder_id)))

    def test_validation_happens_before_persist(self):
        with self.assertRaises(ValidationError):
            self.service.add_reminder(self.user_id, self.med_id, "08:00", recurrence="specific_days", days=[], now=NOW)
        with self.assertRaises(ValidationError):
            self.service.add_reminder(self.user_id, "med_missing", "08:00", now=NOW)
        self.assertEqual([], self.service.list_reminders(self.user_id))
        self.assertEqual([], self.host.list_scheduled())

    def test_max_reminders_per_medicine(self):
        for h in range(5):
            self.service.add_reminder(self.user_id, self.med_id, f"{8 + h:02d}:00", now=NOW)
        with self.assertRaises(ValidationError):
            self.service.add_reminder(self.user_id, self.med_id, "20:00", now=NOW)

    def test_update_rearms(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        res = self.service.update_reminder(rid, now=NOW, recurrence="specific_days", days=DaySet([1, 3, 5]))
        self.assertEqual(3, res.triggers)
        self.assertEqual(3, len(self.regular(rid)))

        self.service.set_reminder_enabled(rid, False, now=NOW)
        self.assertEqual([], self.regular(rid))
        self.assertFalse(self.engine.db.get_reminder(rid).enabled)
        self.assertIsNone(self.engine.db.get_reminder(rid).next_trigger)

    def test_delete_reminder(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        rem = self.engine.db.get_reminder(rid)
        self.engine.snoozer.snooze(rem, self.engine.db.get_medicine(self.med_id), 5)
        self.service.delete_reminder(rid)
        self.assertEqual([], self.scheduler.armed(reminder_id=rid))
        self.assertEqual([], self.service.list_reminders(self.user_id))
        self.assertFalse(self.engine.db.get_reminder(rid).is_active)

    def test_renaming_medicine_updates_notification_text(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.service.update_medicine(self.med_id, now=NOW, custom_name="Morning pill")
        (n,) = self.regular(rid)
        self.assertEqual("Take your Morning pill", n.content.body)

    def test_search_and_settings(self):
        self.service.add_medicine(self.user_id, "Ibuprofen", brand_name="Advil")
        self.assertEqual(["Ibuprofen"], [m.verified_name for m in self.service.search_medicines(self.user_id, "adv")])
        self.assertEqual([], self.service.search_medicines(self.user_id, "  "))
        user = self.service.update_settings(self.user_id, {"snooze": 10})
        user = self.service.update_settings(user.user_id, {"theme": "dark"})
        self.assertEqual({"snooze": 10, "theme": "dark"}, user.settings)

    def test_concurrent_updates_leave_one_consistent_set(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        variants = [
            {"recurrence": "daily"},
            {"recurrence": "specific_days", "days": DaySet([1, 2])},
            {"recurrence": "specific_days", "days": DaySet([0, 2, 4, 6])},
        ]
        errors = []

        def worker(i):
            try:
                for j in range(3):
                    self.service.update_reminder(rid, now=NOW, **variants[(i + j) % len(variants)])
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual([], errors)
        final = self.engine.db.get_reminder(rid)
        self.assertEqual(len(derive_triggers(final)), len(self.regular(rid)))


class TestPermissionDenied(_EngineCase):
    def host_factory(self):
        return SimulatedHost(permission=False)

    def test_reminder_saved_but_not_armed(self):
        res = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW)
        self.assertFalse(res.armed)
        self.assertIn("permission", res.warning)
        self.assertIsNotNone(self.engine.db.get_reminder(res.reminder_id))

    def test_reconcile_reports_failures(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        report = self.scheduler.reconcile_all(NOW)
        self.assertFalse(report.ok)
        self.assertIn(rid, report.failed)
        self.host.permission = True
        report = self.scheduler.reconcile_all(NOW)
        self.assertTrue(report.ok)
        self.assertEqual(1, len(self.regular(rid)))


class TestReconcile(_EngineCase):
    def test_reconcile_drops_strays_and_is_idempotent(self):
        keep = self.service.add_reminder(self.user_id, self.med_id, "08:00", recurrence="specific_days",
                                         days=[1, 3], now=NOW).reminder_id
        off = self.service.add_reminder(self.user_id, self.med_id, "12:00", now=NOW).reminder_id
        # host lost one booking; a ghost booking survived from an interrupted delete
        self.host.cancel(self.regular(keep)[0].handle)
        self.engine.db.update_reminder(_disabled(self.engine.db.get_reminder(off)))
        self.scheduler.book(DailyTrigger(7, 0), {"reminder_id": "rem_ghost", "med_id": self.med_id, "kind": "reminder"},
                            self.regular(keep)[0].content)

        report = self.scheduler.reconcile_all(NOW)
        self.assertEqual(2, report.retracted)
        self.assertEqual({keep: 2, off: 0}, report.armed)
        self.assertEqual(2, len(self.host.list_scheduled()))

        again = self.scheduler.reconcile_all(NOW)
        self.assertEqual(0, again.retracted)
        self.assertEqual(2, len(self.host.list_scheduled()))

    def test_reconcile_keeps_snoozes(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.engine.snoozer.snooze(self.engine.db.get_reminder(rid), self.engine.db.get_medicine(self.med_id))
        self.scheduler.reconcile_all(NOW)
        self.assertEqual(1, len(self.scheduler.armed(reminder_id=rid, kind=TriggerKind.SNOOZE)))


def _disabled(rem: Reminder) -> Reminder:
    rem.enabled = False
    return rem


class TestMedicineDeletion(_EngineCase):
    def _populate(self, med_id):
        rids = [
            self.service.add_reminder(self.user_id, med_id, "08:00", now=NOW).reminder_id,
            self.service.add_reminder(self.user_id, med_id, "12:00", recurrence="specific_days",
                                      days=[1, 3], now=NOW).reminder_id,
            self.service.add_reminder(self.user_id, med_id, "20:00", recurrence="interval",
                                      interval_days=2, now=NOW).reminder_id,
        ]
        for i in range(5):
            self.ledger.log_intake(med_id, rids[i % 3], NOW - timedelta(days=i + 1), IntakeStatus.TAKEN, now=NOW)
        return rids

    def test_delete_medicine_cascades(self):
        rids = self._populate(self.med_id)
        other = self.service.add_medicine(self.user_id, "Ibuprofen")
        other_rid = self.service.add_reminder(self.user_id, other, "09:30", now=NOW).reminder_id
        self.assertEqual(4, len(self.regular(med_id=self.med_id)))

        result = self.service.delete_medicine(self.med_id)
        self.assertEqual(4, result.retracted)
        self.assertIsNone(result.warning)

        self.assertEqual([], self.scheduler.armed(med_id=self.med_id))
        self.assertEqual(1, len(self.regular(other_rid)))
        for rid in rids:
            self.assertIsNone(self.engine.db.get_reminder(rid))
        history = self.ledger.get_history_by_medicine(self.med_id)
        self.assertEqual(5, len(history))
        self.assertTrue(all(h.reminder_id is None for h in history))
        self.assertEqual([other], [m.med_id for m in self.service.get_medicines(self.user_id)])
        self.assertFalse(self.engine.db.get_medicine(self.med_id).is_active)

        # deleted medicines stay out of reconciliation
        self.scheduler.reconcile_all(NOW)
        self.assertEqual([], self.scheduler.armed(med_id=self.med_id))
        with self.assertRaises(ValidationError):
            self.service.delete_medicine(self.med_id)

    def test_purge_removes_history(self):
        self._populate(self.med_id)
        self.service.purge_medicine(self.med_id)
        self.assertIsNone(self.engine.db.get_medicine(self.med_id))
        self.assertEqual([], self.ledger.get_history_by_medicine(self.med_id))
        self.assertEqual([], self.host.list_scheduled())


# -------------------------
# Regressions: cadence, host outages, locking
# -------------------------
class TestIntervalCadence(_EngineCase):
    def test_reconcile_does_not_push_interval_out(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "20:00", recurrence="interval",
                                        interval_days=2, now=NOW).reminder_id
        due = self.engine.db.get_reminder(rid).next_trigger
        self.assertEqual(to_ts(NOW + timedelta(days=2)), due)
        handles = [n.handle for n in self.regular(rid)]

        for later in (NOW + timedelta(hours=1), NOW + timedelta(days=1)):
            self.assertTrue(self.scheduler.reconcile_all(later).ok)
            self.assertEqual(due, self.engine.db.get_reminder(rid).next_trigger)
            self.assertEqual(handles, [n.handle for n in self.regular(rid)])


class TestHostUnavailable(_EngineCase):
    def test_delete_medicine_still_deletes(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.engine.snoozer.snooze(self.engine.db.get_reminder(rid), self.engine.db.get_medicine(self.med_id), 5)

        self.host.available = False
        result = self.service.delete_medicine(self.med_id)
        self.assertIn("unavailable", result.warning)
        self.assertEqual(0, result.retracted)
        self.assertFalse(self.engine.db.get_medicine(self.med_id).is_active)
        self.assertIsNone(self.engine.db.get_reminder(rid))

        # the next reconcile drops both the regular trigger and the snooze
        self.host.available = True
        self.assertEqual(2, len(self.scheduler.armed(med_id=self.med_id)))
        report = self.scheduler.reconcile_all(NOW)
        self.assertEqual(2, report.retracted)
        self.assertEqual([], self.scheduler.armed(med_id=self.med_id))

    def test_reconcile_reports_unreachable_host(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.host.available = False
        report = self.scheduler.reconcile_all(NOW)
        self.assertFalse(report.ok)
        self.assertIn("unavailable", report.stray_error)
        self.assertIn(rid, report.failed)

        self.host.available = True
        self.assertTrue(self.scheduler.reconcile_all(NOW).ok)
        self.assertEqual(1, len(self.regular(rid)))


class TestMedicineLock(_EngineCase):
    def test_add_reminder_waits_for_delete(self):
        errors = []

        def add():
            try:
                self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW)
            except ValidationError as exc:
                errors.append(exc)

        with self.scheduler.medicine_locked(self.med_id):
            t = threading.Thread(target=add)
            t.start()
            t.join(0.2)
            self.assertTrue(t.is_alive())
            self.service.delete_medicine(self.med_id)
        t.join(5)

        self.assertFalse(t.is_alive())
        self.assertEqual(1, len(errors))
        self.assertEqual([], self.scheduler.armed(med_id=self.med_id))
        self.assertEqual([], self.service.list_reminders(self.user_id))

    def test_stale_rows_cannot_snooze(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        rem, med = self.engine.db.get_reminder(rid), self.engine.db.get_medicine(self.med_id)
        self.service.delete_reminder(rid)
        with self.assertRaises(ValidationError):
            self.engine.snoozer.snooze(rem, med, 5)

        other = self.service.add_reminder(self.user_id, self.med_id, "12:00", now=NOW).reminder_id
        rem = self.engine.db.get_reminder(other)
        self.service.delete_medicine(self.med_id)
        with self.assertRaises(ValidationError):
            self.engine.snoozer.snooze(rem, med, 5)
        self.assertEqual([], self.host.list_scheduled())

    def test_lock_table_drains(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.service.update_reminder(rid, now=NOW, time_of_day="09:00")
        self.engine.snoozer.snooze(self.engine.db.get_reminder(rid), self.engine.db.get_medicine(self.med_id))
        self.service.update_medicine(self.med_id, now=NOW, custom_name="Morning pill")
        self.scheduler.reconcile_all(NOW)
        self.service.delete_reminder(rid)
        self.service.add_reminder(self.user_id, self.med_id, "20:00", now=NOW)
        self.service.delete_medicine(self.med_id)
        self.assertEqual(0, len(self.scheduler._locks))


class TestKeyedLocks(unittest.TestCase):
    def test_entries_released(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                with locks.hold("b"):
                    self.assertEqual(2, len(locks))
            self.assertEqual(1, len(locks))
        self.assertEqual(0, len(locks))

    def test_waiter_still_excluded(self):
        locks = KeyedLocks()
        order = []

        def worker():
            with locks.hold("a"):
                order.append("worker")

        with locks.hold("a"):
            t = threading.Thread(target=worker)
            t.start()
            t.join(0.1)
            self.assertTrue(t.is_alive())
            order.append("main")
        t.join(5)
        self.assertEqual(["main", "worker"], order)
        self.assertEqual(0, len(locks))


class TestSimulatedHost(unittest.TestCase):
    def test_fired_snoozes_are_pruned(self):
        clock = [NOW]
        host = SimulatedHost(clock=lambda: clock[0])
        scheduler = NotificationScheduler(host)
        scheduler.arm(_reminder(), _medicine(), NOW)
        SnoozeChannel(scheduler).snooze(_reminder(), _medicine(), 10)
        self.assertEqual(2, len(host.list_scheduled()))

        clock[0] = NOW + timedelta(minutes=9)
        self.assertEqual(2, len(host.list_scheduled()))
        clock[0] = NOW + timedelta(minutes=10)
        self.assertEqual(["reminder"], [n.tag["kind"] for n in host.list_scheduled()])


class TestAndroidRegistry(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.path = Path(self._td.name) / "alarms.json.aes"
        self.key = AESGCM.generate_key(bit_length=256)
        self.host = AndroidAlarmHost(self.path, self.key)

    def tearDown(self):
        self._td.cleanup()

    def test_corrupt_registry_is_reset(self):
        self.path.write_bytes(b"not a registry")
        with self.assertLogs("medreminder.android_alarms", level="ERROR"):
            self.assertEqual([], self.host.list_scheduled())
        self.assertEqual(b"{}", aes_decrypt(self.path.read_bytes(), self.key))
        self.assertEqual([], self.host.list_scheduled())

    def test_failed_alarm_leaves_no_registry_entry(self):
        written_first = []

        def refuse(handle, content):
            written_first.append(handle in self.host._load())
            raise RuntimeError("AlarmManager refused")

        tag = {"reminder_id": "rem_1", "med_id": "med_1", "kind": "reminder"}
        with mock.patch("medreminder.android_alarms.on_android", return_value=True), \
                mock.patch.object(AndroidAlarmHost, "permission_granted", return_value=True), \
                mock.patch.object(AndroidAlarmHost, "_pending_intent", side_effect=refuse):
            with self.assertRaises(SchedulingError):
                self.host.schedule(DailyTrigger(8, 0), tag, NotificationContent(title="t", body="b"))

        self.assertEqual([True], written_first)
        self.assertEqual([], self.host.list_scheduled())


# -------------------------
# Adherence
# -------------------------
class TestAdherence(_EngineCase):
    def test_empty_stats(self):
        stats = self.ledger.get_stats(self.user_id, now=NOW)
        self.assertEqual({"total": 0, "taken": 0, "skipped": 0, "missed": 0, "rate": 0.0}, stats.as_dict())

    def test_rate(self):
        statuses = ["taken"] * 8 + ["skipped", "missed"]
        for i, status in enumerate(statuses):
            self.ledger.log_intake(self.med_id, None, NOW - timedelta(hours=i + 1), status, now=NOW)
        stats = self.ledger.get_stats(self.user_id, now=NOW)
        self.assertEqual((10, 8, 1, 1, 80.0), (stats.total, stats.taken, stats.skipped, stats.missed, stats.rate))
        self.assertEqual(80.0, self.ledger.get_medicine_stats(self.med_id, now=NOW).rate)

    def test_window_is_inclusive(self):
        cutoff = to_ts(NOW) - 30 * 86400
        self.ledger.log_intake(self.med_id, None, cutoff, "taken", now=NOW)
        self.ledger.log_intake(self.med_id, None, cutoff - 1, "skipped", now=NOW)
        stats = self.ledger.get_stats(self.user_id, window_days=30, now=NOW)
        self.assertEqual((1, 1, 100.0), (stats.total, stats.taken, stats.rate))

    def test_lateness(self):
        slot = NOW.replace(hour=8)
        self.ledger.log_intake(self.med_id, None, slot, "taken", now=slot + timedelta(minutes=25))
        self.ledger.log_intake(self.med_id, None, slot, "taken", now=slot - timedelta(minutes=5))
        self.ledger.log_intake(self.med_id, None, slot, "missed", now=slot + timedelta(hours=2))
        by_status = {}
        for h in self.ledger.get_history(self.user_id):
            by_status.setdefault(h.status, []).append(h)
        self.assertEqual([0, 25], sorted(h.late_by_minutes for h in by_status[IntakeStatus.TAKEN]))
        (missed,) = by_status[IntakeStatus.MISSED]
        self.assertEqual(0, missed.late_by_minutes)
        self.assertIsNone(missed.actual_time)
        self.assertEqual("Aspirin", missed.medicine_name)

    def test_unknown_medicine_and_status(self):
        with self.assertRaises(ValidationError):
            self.ledger.log_intake("med_missing", None, NOW, "taken", now=NOW)
        with self.assertRaises(ValidationError):
            self.ledger.log_intake(self.med_id, None, NOW, "forgotten", now=NOW)

    def test_mark_taken_uses_todays_slot(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:30", now=NOW).reminder_id
        self.ledger.mark_taken(self.engine.db.get_reminder(rid), now=NOW)
        (h,) = self.ledger.get_history(self.user_id)
        self.assertEqual(to_ts(NOW.replace(minute=30, hour=8)), h.scheduled_time)
        self.assertEqual(30, h.late_by_minutes)
        self.assertEqual(rid, h.reminder_id)

    def test_mark_skipped_and_manual(self):
        rid = self.service.add_reminder(self.user_id, self.med_id, "08:00", now=NOW).reminder_id
        self.ledger.mark_skipped(self.engine.db.get_reminder(rid), note="felt sick", now=NOW)
        self.ledger.log_manual(self.med_id, now=NOW)
        manual, skipped = sorted(self.ledger.get_history(self.user_id), key=lambda h: h.scheduled_time, reverse=True)
        self.assertEqual((IntakeStatus.SKIPPED, 60, "felt sick"), (skipped.status, skipped.late_by_minutes, skipped.notes))
        self.assertEqual((IntakeStatus.TAKEN, None, 0), (manual.status, manual.reminder_id, manual.late_by_minutes))
        self.assertEqual(50.0, self.ledger.get_stats(self.user_id, now=NOW).rate)

    def test_history_by_range(self):
        for d in range(5):
            self.ledger.log_intake(self.med_id, None, NOW - timedelta(days=d), "taken", now=NOW)
        rows = self.ledger.get_history_by_range(self.user_id, NOW - timedelta(days=2), NOW)
        self.assertEqual(3, len(rows))

    def test_sweep_missed(self):
        start = to_ts(NOW - timedelta(days=3))
        early = self.service.add_reminder(self.user_id, self.med_id, "07:00", start_date=start, now=NOW).reminder_id
        taken = self.service.add_reminder(self.user_id, self.med_id, "07:30", start_date=start, now=NOW).reminder_id
        self.service.add_reminder(self.user_id, self.med_id, "08:30", start_date=start, now=NOW)
        self.ledger.mark_taken(self.engine.db.get_reminder(taken), now=NOW)

        later = NOW.replace(hour=9, minute=10)
        self.assertEqual(1, self.ledger.sweep_missed(later))
        self.assertEqual(0, self.ledger.sweep_missed(later))

        missed = [h for h in self.ledger.get_history(self.user_id) if h.status is IntakeStatus.MISSED]
        self.assertEqual([early], [h.reminder_id for h in missed])

    def test_sweep_skips_reminders_created_after_slot(self):
        self.service.add_reminder(self.user_id, self.med_id, "07:00", now=NOW)
        self.assertEqual(0, self.ledger.sweep_missed(NOW.replace(hour=10)))


class TestBackgroundSweeper(_EngineCase):
    def test_check_runs_missed_sweep(self):
        start = to_ts(NOW - timedelta(days=1))
        self.service.add_reminder(self.user_id, self.med_id, "07:00", start_date=start, now=NOW)
        sweeper = BackgroundSweeper(self.engine)
        self.assertEqual(1, sweeper.check(NOW.replace(hour=8, minute=30)))
        self.assertEqual(0, sweeper.check(NOW.replace(hour=8, minute=31)))

    def test_sweep_can_be_disabled(self):
        start = to_ts(NOW - timedelta(days=1))
        self.service.add_reminder(self.user_id, self.med_id, "07:00", start_date=start, now=NOW)
        self.engine.settings = Settings(base_dir=self.base, missed_sweep_enabled=False)
        self.assertEqual(0, BackgroundSweeper(self.engine).check(NOW.replace(hour=8, minute=30)))

    def test_start_stop(self):
        self.engine.settings = Settings(base_dir=self.base, sweep_interval_seconds=3600)
        sweeper = BackgroundSweeper(self.engine)
        sweeper.start()
        self.assertTrue(sweeper.running)
        sweeper.stop()
        self.assertFalse(sweeper.running)


# -------------------------
# Config / logging
# -------------------------
class TestSettings(unittest.TestCase):
    def test_from_env(self):
        with tempfile.TemporaryDirectory() as td:
            env = {
                "MEDREMINDER_DATA_DIR": td,
                "MEDREMINDER_MISSED_GRACE_MINUTES": "45",
                "MEDREMINDER_MISSED_SWEEP": "off",
                "MEDREMINDER_SNOOZE_MINUTES": "10",
            }
            with mock.patch.dict(os.environ, env):
                s = Settings.from_env()
            self.assertEqual(Path(td), s.base_dir)
            self.assertEqual(45, s.missed_grace_minutes)
            self.assertFalse(s.missed_sweep_enabled)
            self.assertEqual(10, s.default_snooze_minutes)
            self.assertEqual(Path(td) / "medicines.db.aes", s.db_path)

    def test_bad_integer(self):
        with mock.patch.dict(os.environ, {"MEDREMINDER_SWEEP_SECONDS": "soon"}):
            with self.assertRaises(ValueError):
                Settings.from_env(base_dir=Path(tempfile.gettempdir()))


class TestRingLog(unittest.TestCase):
    def test_ring_keeps_last_lines(self):
        ring = RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}\n")
        ring.add("")
        self.assertEqual("line 2\nline 3\nline 4", ring.text())
        ring.clear()
        self.assertEqual("", ring.text())

    def test_handler_writes_ring_and_file(self):
        with tempfile.TemporaryDirectory() as td:
            log_path = Path(td) / "app.log"
            ring = RingLog()
            log = logging.getLogger("medreminder.tests.handler")
            log.propagate = False
            handler = FileAndRingHandler(ring, log_path)
            log.addHandler(handler)
            try:
                log.warning("dose overdue")
            finally:
                log.removeHandler(handler)
            self.assertIn("WARNING dose overdue", ring.text())
            self.assertIn("dose overdue", log_path.read_text(encoding="utf-8"))

            clear_log(ring, log_path)
            self.assertEqual("", ring.text())
            self.assertFalse(log_path.exists())


if __name__ == "__main__":
    unittest.main(verbosity=2)
