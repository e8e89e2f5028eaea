# medreminder/host.py
#
# The minimal notification-facility contract the scheduler depends on,
# plus the in-process host used on desktop (and in tests).
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from .config import DEFAULT_SOUND
from .errors import SchedulingError
from .triggers import TriggerSpec, next_occurrence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationContent:
    title: str
    body: str
    sound: str = DEFAULT_SOUND
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScheduledNotification:
    handle: str
    trigger: TriggerSpec
    tag: Dict[str, Any]
    content: NotificationContent
    booked_at: datetime


class NotificationHost:
    """
    schedule(trigger, tag, content) -> handle
    list_scheduled()                -> every booking the host still holds
    cancel(handle)                  -> unknown handles are a no-op
    fire_now(content, tag)          -> deliver immediately
    Failures raise SchedulingError.
    """

    name = "abstract"

    def permission_granted(self) -> bool:
        return True

    def schedule(self, trigger: TriggerSpec, tag: Dict[str, Any], content: NotificationContent) -> str:
        raise NotImplementedError

    def list_scheduled(self) -> List[ScheduledNotification]:
        raise NotImplementedError

    def cancel(self, handle: str) -> None:
        raise NotImplementedError

    def fire_now(self, content: NotificationContent, tag: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class SimulatedHost(NotificationHost):
    """In-memory bookings; alarms are only logged. One-shots drop out once they have fired."""

    name = "simulated"

    def __init__(self, permission: bool = True, available: bool = True,
                 clock: Optional[Callable[[], datetime]] = None):
        self.permission = permission
        self.available = available
        self.clock = clock or datetime.now
        self.fired: List[NotificationContent] = []
        self._bookings: Dict[str, ScheduledNotification] = {}
        self._lock = RLock()

    def permission_granted(self) -> bool:
        return self.permission

    def _check(self):
        if not self.available:
            raise SchedulingError("notification facility unavailable")
        if not self.permission:
            raise SchedulingError("notification permission denied")

    def schedule(self, trigger, tag, content) -> str:
        self._check()
        now = self.clock()
        handle = uuid.uuid4().hex
        with self._lock:
            self._bookings[handle] = ScheduledNotification(
                handle=handle, trigger=trigger, tag=dict(tag), content=content, booked_at=now,
            )
        logger.info(f"[Simulated alarm] {content.title} - {content.body} @ {next_occurrence(trigger, now)}")
        return handle

    def list_scheduled(self) -> List[ScheduledNotification]:
        if not self.available:
            raise SchedulingError("notification facility unavailable")
        now = self.clock()
        with self._lock:
            fired = [h for h, n in self._bookings.items()
                     if not n.trigger.repeats and next_occurrence(n.trigger, n.booked_at, n.booked_at) <= now]
            for h in fired:
                del self._bookings[h]
            return list(self._bookings.values())

    def cancel(self, handle: str) -> None:
        if not self.available:
            raise SchedulingError("notification facility unavailable")
        with self._lock:
            self._bookings.pop(handle, None)

    def fire_now(self, content, tag=None) -> None:
        self._check()
        self.fired.append(content)
        logger.info(f"[Simulated notification] {content.title} - {content.body}")
