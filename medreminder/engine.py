# medreminder/engine.py
#
# Composition root: every component is built here and handed its
# collaborators explicitly.
import logging
from dataclasses import dataclass
from typing import Optional

from .android_alarms import AndroidAlarmHost
from .config import Settings, on_android
from .crypto import get_or_create_key
from .db import MedicineDB
from .host import NotificationHost, SimulatedHost
from .ledger import AdherenceLedger
from .scheduler import NotificationScheduler
from .service import ReminderService
from .snooze import SnoozeChannel

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    db: MedicineDB
    host: NotificationHost
    scheduler: NotificationScheduler
    ledger: AdherenceLedger
    snoozer: SnoozeChannel
    service: ReminderService


def default_host(settings: Settings, key: bytes) -> NotificationHost:
    if on_android():
        return AndroidAlarmHost(settings.alarm_registry_path, key)
    return SimulatedHost()


def build_engine(settings: Optional[Settings] = None, key: Optional[bytes] = None,
                 host: Optional[NotificationHost] = None) -> Engine:
    settings = settings or Settings.from_env()
    key = key or get_or_create_key(settings.key_path)
    db = MedicineDB(key, settings.db_path, settings.tmp_dir)
    host = host or default_host(settings, key)
    scheduler = NotificationScheduler(host, db)
    engine = Engine(
        settings=settings,
        db=db,
        host=host,
        scheduler=scheduler,
        ledger=AdherenceLedger(db, grace_minutes=settings.missed_grace_minutes),
        snoozer=SnoozeChannel(scheduler, default_minutes=settings.default_snooze_minutes),
        service=ReminderService(db, scheduler),
    )
    logger.info(f"engine ready host={host.name} base={settings.base_dir}")
    return engine
