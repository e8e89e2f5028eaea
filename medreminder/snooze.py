# medreminder/snooze.py
import logging
from typing import Optional

from .config import DEFAULT_SNOOZE_MINUTES, SNOOZE_TITLE
from .errors import ValidationError
from .host import NotificationContent
from .models import Medicine, Reminder, TriggerKind
from .scheduler import NotificationScheduler, make_tag
from .triggers import IntervalTrigger

logger = logging.getLogger(__name__)


class SnoozeChannel:
    """
    One-shot re-notification `delay` minutes out. Books through the
    scheduler's primitive call only, so the reminder's regular triggers are
    never touched. Nothing is persisted.
    """

    def __init__(self, scheduler: NotificationScheduler, default_minutes: int = DEFAULT_SNOOZE_MINUTES):
        self.scheduler = scheduler
        self.default_minutes = int(default_minutes)

    def snooze(self, reminder: Reminder, medicine: Medicine, delay_minutes: Optional[int] = None) -> str:
        delay = self.default_minutes if delay_minutes is None else int(delay_minutes)
        if delay <= 0:
            raise ValidationError(f"snooze delay must be positive, got {delay}")

        with self.scheduler.locked(reminder.reminder_id):
            db = self.scheduler.db
            if db is not None:
                # callers may hold rows that a delete has since retired
                stored_rem, stored_med = db.get_reminder(reminder.reminder_id), db.get_medicine(medicine.med_id)
                if stored_rem is None or stored_med is None:
                    raise ValidationError(f"reminder {reminder.reminder_id} no longer exists")
                reminder, medicine = stored_rem, stored_med
            _check_snoozable(reminder, medicine)

            tag = make_tag(reminder.reminder_id, reminder.med_id, TriggerKind.SNOOZE)
            content = NotificationContent(
                title=SNOOZE_TITLE,
                body=f"Take your {medicine.display_name}",
                sound=reminder.sound,
                data=dict(tag),
            )
            handle = self.scheduler.book(IntervalTrigger(seconds=delay * 60, repeats=False), tag, content)
        logger.info(f"snoozed reminder={reminder.reminder_id} for {delay} min")
        return handle


def _check_snoozable(reminder: Reminder, medicine: Medicine):
    if not reminder.is_active or not reminder.enabled:
        raise ValidationError(f"reminder {reminder.reminder_id} is deleted or disabled")
    if not medicine.is_active:
        raise ValidationError(f"medicine {medicine.med_id} is deleted")
    if not reminder.snooze_enabled:
        raise ValidationError(f"snooze is disabled for reminder {reminder.reminder_id}")
