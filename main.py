# main.py
# Medicine Reminder: app shell around the scheduling and adherence engine.
#
# - Run normally:            python main.py
# - Generate Android Java + manifest injection files for Buildozer:
#                            python main.py --gen-android
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,pyjnius,cryptography
#   android.api = 34
#   android.minapi = 24
#   android.permissions = POST_NOTIFICATIONS,SCHEDULE_EXACT_ALARM,RECEIVE_BOOT_COMPLETED,WAKE_LOCK,VIBRATE
#   android.add_src = android_src
#   android.extra_manifest_xml = android_src/extra_manifest.xml

import logging
import os
import sys
from pathlib import Path
from typing import Optional

# our own flags (--gen-android) must not reach kivy's argv parser
os.environ.setdefault("KIVY_NO_ARGS", "1")

from kivy.app import App
from kivy.clock import Clock
from kivy.core.window import Window
from kivy.metrics import dp
from kivy.uix.boxlayout import BoxLayout
from kivy.uix.button import Button
from kivy.uix.label import Label
from kivy.utils import platform as _kivy_platform

from medreminder.android_alarms import can_schedule_exact_alarms, ensure_android_notification_permission
from medreminder.android_src import write_android_sources
from medreminder.background import BackgroundSweeper
from medreminder.config import Settings
from medreminder.engine import Engine, build_engine
from medreminder.errors import MedReminderError
from medreminder.logs import clear_log, setup_logging

logger = logging.getLogger("medreminder")

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)


class MedicineReminderApp(App):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.settings = Settings.from_env()
        self.ring = setup_logging(self.settings.log_path, self.settings.log_max_lines)
        self.engine: Optional[Engine] = None
        self.sweeper: Optional[BackgroundSweeper] = None
        self.user_id: Optional[str] = None
        self._status: Optional[Label] = None
        self._upcoming: Optional[Label] = None
        self._log: Optional[Label] = None

    def build(self):
        self.title = "Medicine Reminder"
        root = BoxLayout(orientation="vertical", padding=dp(12), spacing=dp(12))
        self._status = Label(text="Alarms: starting...", size_hint_y=None, height=dp(60))
        self._upcoming = Label(text="", halign="left", valign="top")
        self._upcoming.bind(size=lambda w, s: setattr(w, "text_size", s))
        self._log = Label(text="", halign="left", valign="bottom", font_size="11sp")
        self._log.bind(size=lambda w, s: setattr(w, "text_size", s))

        buttons = BoxLayout(size_hint_y=None, height=dp(54), spacing=dp(10))
        resync = Button(text="Resync Alarms")
        resync.bind(on_release=lambda *_: self.resync_alarms())
        clear = Button(text="Clear Log")
        clear.bind(on_release=lambda *_: self.clear_log())
        buttons.add_widget(resync)
        buttons.add_widget(clear)

        root.add_widget(self._status)
        root.add_widget(self._upcoming)
        root.add_widget(self._log)
        root.add_widget(buttons)
        return root

    def on_start(self):
        logger.info(f"app start platform={_kivy_platform} base={self.settings.base_dir}")
        ensure_android_notification_permission()

        self.engine = build_engine(self.settings)
        self.user_id = self.engine.service.ensure_local_user().user_id

        self.sweeper = BackgroundSweeper(self.engine)
        self.sweeper.start()

        # startup reconcile doubles as crash/boot recovery
        Clock.schedule_once(lambda *_: self.resync_alarms(silent=True), 1.0)
        Clock.schedule_interval(lambda *_: self.resync_alarms(silent=True), self.settings.resync_interval_seconds)
        Clock.schedule_interval(lambda *_: self.refresh(), 60)
        Clock.schedule_interval(lambda *_: self.refresh_log(), 20)
        Clock.schedule_once(lambda *_: self.refresh(), 0.4)

    def on_stop(self):
        if self.sweeper:
            self.sweeper.stop()

    def refresh(self):
        if not self.engine:
            return
        try:
            left = self.engine.service.todays_remaining(self.user_id)
            stats = self.engine.ledger.get_stats(self.user_id)
            meds = {m.med_id: m.display_name for m in self.engine.service.get_medicines(self.user_id)}
            lines = [f"{r.time_of_day.strftime('%H:%M')}  {meds.get(r.med_id, '?')}" for r in left]
            self._upcoming.text = "Remaining today:\n" + ("\n".join(lines) if lines else "nothing left today")

            if self.engine.host.name == "android":
                mode = "Exact" if can_schedule_exact_alarms() else "Fallback"
            else:
                mode = "Desktop (simulated)"
            self._status.text = (
                f"Alarms: {mode}\n"
                f"Adherence (30d): {stats.rate}%  ({stats.taken}/{stats.total})"
            )
        except MedReminderError:
            logger.exception("refresh failed")

    def resync_alarms(self, silent: bool = False):
        if not self.engine:
            return
        try:
            report = self.engine.scheduler.reconcile_all()
            if report.failed:
                self._status.text = f"Alarms: {len(report.failed)} reminder(s) could not be armed"
            elif report.stray_error:
                self._status.text = "Alarms: stale alarms could not be cleared"
            elif not silent:
                logger.info(f"resynced alarms for {len(report.armed)} reminders")
        except MedReminderError:
            logger.exception("resync_alarms failed")

    def refresh_log(self):
        # last screenful only; the full log stays in app.log
        self._log.text = "\n".join(self.ring.text().splitlines()[-12:])

    def clear_log(self):
        clear_log(self.ring, self.settings.log_path)
        self.refresh_log()


def main():
    if "--gen-android" in sys.argv:
        src_root = write_android_sources(Path.cwd())
        print(f"[gen] Wrote android sources to: {src_root}")
        print("[gen] In buildozer.spec set:")
        print("      android.add_src = android_src")
        print("      android.extra_manifest_xml = android_src/extra_manifest.xml")
        return

    MedicineReminderApp().run()


if __name__ == "__main__":
    main()
