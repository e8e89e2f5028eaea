# medreminder/android_alarms.py
#
# AlarmManager-backed host. AlarmManager cannot list pending alarms, so every
# booking is also written to an encrypted registry next to the database; the
# registry is what list_scheduled() enumerates.
import hashlib
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Dict, List

from cryptography.exceptions import InvalidTag

from .config import (
    JAVA_ALARM_RECEIVER, NOTIFICATION_CHANNEL_ID, NOTIFICATION_CHANNEL_NAME, autoclass, cast, on_android,
)
from .crypto import aes_decrypt, aes_encrypt, atomic_write_bytes
from .errors import SchedulingError
from .host import NotificationContent, NotificationHost, ScheduledNotification
from .triggers import next_occurrence, repeat_interval_seconds, trigger_from_dict, trigger_to_dict

logger = logging.getLogger(__name__)


# -------------------------
# Android runtime permissions
# -------------------------
def android_sdk_int() -> int:
    if not on_android():
        return 0
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        return int(BuildVERSION.SDK_INT)
    except Exception:
        return 0


def _activity():
    PythonActivity = autoclass("org.kivy.android.PythonActivity")
    return PythonActivity.mActivity


def notification_permission_granted() -> bool:
    if not on_android():
        return False
    if android_sdk_int() < 33:
        return True
    try:
        ContextCompat = autoclass("androidx.core.content.ContextCompat")
        PackageManager = autoclass("android.content.pm.PackageManager")
        Manifest = autoclass("android.Manifest")
        perm = Manifest.permission.POST_NOTIFICATIONS
        return ContextCompat.checkSelfPermission(_activity(), perm) == PackageManager.PERMISSION_GRANTED
    except Exception:
        logger.exception("POST_NOTIFICATIONS check failed")
        return False


def ensure_android_notification_permission():
    """
    Android 13+ needs POST_NOTIFICATIONS runtime permission.
    If request fails (OEM quirks), we log and continue; medicines can still be managed.
    """
    if not on_android() or android_sdk_int() < 33:
        return
    try:
        if notification_permission_granted():
            return
        ActivityCompat = autoclass("androidx.core.app.ActivityCompat")
        Manifest = autoclass("android.Manifest")
        ActivityCompat.requestPermissions(_activity(), [Manifest.permission.POST_NOTIFICATIONS], 2407)
        logger.info("requested POST_NOTIFICATIONS permission")
    except Exception:
        logger.exception("POST_NOTIFICATIONS request failed")


def can_schedule_exact_alarms() -> bool:
    if not on_android():
        return False
    if android_sdk_int() < 31:
        return True
    try:
        Context = autoclass("android.content.Context")
        AlarmManager = autoclass("android.app.AlarmManager")
        am = cast(AlarmManager, _activity().getSystemService(Context.ALARM_SERVICE))
        return bool(am.canScheduleExactAlarms())
    except Exception:
        logger.exception("canScheduleExactAlarms check failed")
        return False


def stable_alarm_request_code(handle: str) -> int:
    h = hashlib.sha256(handle.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF


class AndroidAlarmHost(NotificationHost):
    name = "android"

    def __init__(self, registry_path: Path, key: bytes):
        self.registry_path = Path(registry_path)
        self.key = key
        self._lock = RLock()

    # -------------------------
    # Registry
    # -------------------------
    def _load(self) -> Dict[str, dict]:
        if not self.registry_path.exists():
            return {}
        try:
            blob = self.registry_path.read_bytes()
        except OSError as exc:
            raise SchedulingError(f"alarm registry unreadable: {exc!r}") from exc
        try:
            return json.loads(aes_decrypt(blob, self.key).decode("utf-8"))
        except (InvalidTag, ValueError):
            # alarms it named become orphans until they fire; reconcile re-books the rest
            logger.exception(f"alarm registry corrupt; resetting {self.registry_path}")
            self._save({})
            return {}

    def _save(self, reg: Dict[str, dict]):
        try:
            atomic_write_bytes(self.registry_path, aes_encrypt(json.dumps(reg).encode("utf-8"), self.key))
        except OSError as exc:
            raise SchedulingError(f"alarm registry write failed: {exc!r}") from exc

    # -------------------------
    # AlarmManager
    # -------------------------
    def _pending_intent(self, handle: str, content: NotificationContent):
        activity = _activity()
        app_ctx = activity.getApplicationContext()
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")

        intent = Intent()
        intent.setClassName(app_ctx, JAVA_ALARM_RECEIVER)
        intent.putExtra("title", content.title)
        intent.putExtra("body", content.body)
        intent.putExtra("handle", handle)

        flags = PendingIntent.FLAG_UPDATE_CURRENT
        if android_sdk_int() >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE
        pi = PendingIntent.getBroadcast(app_ctx, stable_alarm_request_code(handle), intent, int(flags))
        return app_ctx, pi

    def _alarm_manager(self, app_ctx):
        Context = autoclass("android.content.Context")
        AlarmManager = autoclass("android.app.AlarmManager")
        return AlarmManager, cast(AlarmManager, app_ctx.getSystemService(Context.ALARM_SERVICE))

    def permission_granted(self) -> bool:
        return notification_permission_granted()

    def schedule(self, trigger, tag, content) -> str:
        if not on_android():
            raise SchedulingError("AlarmManager not available on this platform")
        if not self.permission_granted():
            raise SchedulingError("notification permission denied")

        now = datetime.now()
        handle = uuid.uuid4().hex
        at_time = next_occurrence(trigger, now)
        trigger_ms = int(at_time.timestamp() * 1000)
        repeat_s = repeat_interval_seconds(trigger)

        with self._lock:
            # registry first: an alarm the registry does not know about could never be cancelled
            reg = self._load()
            reg[handle] = {
                "trigger": trigger_to_dict(trigger),
                "tag": dict(tag),
                "content": {"title": content.title, "body": content.body, "sound": content.sound,
                            "data": dict(content.data)},
                "booked_at": now.isoformat(),
            }
            self._save(reg)
            try:
                app_ctx, pi = self._pending_intent(handle, content)
                AlarmManager, am = self._alarm_manager(app_ctx)
                if repeat_s:
                    am.setRepeating(AlarmManager.RTC_WAKEUP, trigger_ms, repeat_s * 1000, pi)
                    logger.info(f"alarm repeating rc={stable_alarm_request_code(handle)} @ {at_time} every {repeat_s}s")
                elif can_schedule_exact_alarms():
                    am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                    logger.info(f"alarm exact+idle rc={stable_alarm_request_code(handle)} @ {at_time}")
                else:
                    # Fallback (not guaranteed exact on some devices/versions):
                    am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                    logger.info(f"alarm idle(fallback) rc={stable_alarm_request_code(handle)} @ {at_time}")
            except Exception as exc:
                reg.pop(handle, None)
                try:
                    self._save(reg)
                except SchedulingError:
                    logger.exception(f"could not roll back registry entry {handle}")
                raise SchedulingError(f"alarm scheduling failed: {exc!r}") from exc
        return handle

    def list_scheduled(self) -> List[ScheduledNotification]:
        now = datetime.now()
        out = []
        with self._lock:
            reg = self._load()
            expired = []
            for handle, d in reg.items():
                trigger = trigger_from_dict(d["trigger"])
                booked_at = datetime.fromisoformat(d["booked_at"])
                if not trigger.repeats and next_occurrence(trigger, booked_at) <= now:
                    expired.append(handle)
                    continue
                out.append(ScheduledNotification(
                    handle=handle, trigger=trigger, tag=d["tag"],
                    content=NotificationContent(**d["content"]), booked_at=booked_at,
                ))
            if expired:
                for handle in expired:
                    reg.pop(handle, None)
                self._save(reg)
        return out

    def cancel(self, handle: str) -> None:
        with self._lock:
            reg = self._load()
            d = reg.pop(handle, None)
            if d is None:
                return
            if on_android():
                try:
                    app_ctx, pi = self._pending_intent(handle, NotificationContent(**d["content"]))
                    _, am = self._alarm_manager(app_ctx)
                    am.cancel(pi)
                    pi.cancel()
                except Exception as exc:
                    raise SchedulingError(f"alarm cancel failed: {exc!r}") from exc
            self._save(reg)
            logger.info(f"alarm cancelled rc={stable_alarm_request_code(handle)}")

    def fire_now(self, content, tag=None) -> None:
        if not on_android():
            raise SchedulingError("AlarmManager not available on this platform")
        try:
            Context = autoclass("android.content.Context")
            NotificationManager = autoclass("android.app.NotificationManager")
            NotificationChannel = autoclass("android.app.NotificationChannel")
            Notification = autoclass("android.app.Notification")

            activity = _activity()
            nm = activity.getSystemService(Context.NOTIFICATION_SERVICE)
            if android_sdk_int() >= 26:
                ch = NotificationChannel(NOTIFICATION_CHANNEL_ID, NOTIFICATION_CHANNEL_NAME,
                                         NotificationManager.IMPORTANCE_HIGH)
                nm.createNotificationChannel(ch)
                builder = Notification.Builder(activity, NOTIFICATION_CHANNEL_ID)
            else:
                builder = Notification.Builder(activity)
            builder.setContentTitle(content.title)
            builder.setContentText(content.body)
            builder.setSmallIcon(activity.getApplicationInfo().icon)
            builder.setAutoCancel(True)
            nm.notify(int(datetime.now().timestamp()) & 0x7FFFFFFF, builder.build())
        except Exception as exc:
            raise SchedulingError(f"immediate notification failed: {exc!r}") from exc
