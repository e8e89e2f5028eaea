# medreminder/background.py
import logging
import threading
from datetime import datetime
from typing import Optional

from .engine import Engine
from .today import todays_remaining

logger = logging.getLogger(__name__)


class BackgroundSweeper:
    """
    In-app periodic work: the missed-dose sweep, and on desktop (simulated
    host) a log line when a dose comes due.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.interval = max(1, int(engine.settings.sweep_interval_seconds))
        self._stop = threading.Event()
        self.thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, name="medreminder-sweeper", daemon=True)
        self.thread.start()
        logger.info("background sweeper started")

    def stop(self):
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)
        self.thread = None

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("background sweeper check failed")
            self._stop.wait(self.interval)

    def check(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now()
        missed = 0
        if self.engine.settings.missed_sweep_enabled:
            missed = self.engine.ledger.sweep_missed(now)

        if self.engine.host.name == "simulated":
            pairs = self.engine.db.get_schedulable()
            names = {rem.reminder_id: med.display_name for rem, med in pairs}
            for rem in todays_remaining([rem for rem, _ in pairs], now):
                if abs((rem.slot_on(now.date()) - now).total_seconds()) > 30:
                    continue
                logger.info(f"[in-app reminder] {names[rem.reminder_id]} @ {rem.time_of_day.strftime('%H:%M')}")
        return missed
