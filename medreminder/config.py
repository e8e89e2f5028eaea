# medreminder/config.py
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

# -------------------------
# Package identity (for Java)
# -------------------------
PACKAGE_DOMAIN = "org.example"
PACKAGE_NAME = "medreminder"
JAVA_PACKAGE = f"{PACKAGE_DOMAIN}.{PACKAGE_NAME}"  # org.example.medreminder
JAVA_ALARM_RECEIVER = f"{JAVA_PACKAGE}.AlarmReceiver"

# -------------------------
# Notifications
# -------------------------
NOTIFICATION_CHANNEL_ID = "medreminder-reminders"
NOTIFICATION_CHANNEL_NAME = "Medicine Reminders"
NOTIFICATION_TITLE = "Time for your medicine"
SNOOZE_TITLE = "Snoozed: time for your medicine"
DEFAULT_SOUND = "default"

DEFAULT_SNOOZE_MINUTES = 15

# -------------------------
# Limits / defaults
# -------------------------
MAX_REMINDERS_PER_MEDICINE = 5
DEFAULT_STATS_WINDOW_DAYS = 30
DEFAULT_HISTORY_LIMIT = 50

# a scheduled dose with no history entry this long after its slot is logged as missed
MISSED_GRACE_MINUTES = 60
SWEEP_INTERVAL_SECONDS = 30
RESYNC_INTERVAL_SECONDS = 60 * 15
LOG_MAX_LINES = 800


def on_android() -> bool:
    return "ANDROID_ARGUMENT" in os.environ and autoclass is not None


# -------------------------
# Paths
# -------------------------
def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _android_files_dir() -> Optional[Path]:
    if not on_android():
        return None
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        d = activity.getFilesDir().getAbsolutePath()
        return Path(str(d))
    except Exception:
        return None


def app_base_dir() -> Path:
    p = os.environ.get("MEDREMINDER_DATA_DIR")
    if p:
        d = Path(p)
        d.mkdir(parents=True, exist_ok=True)
        return d

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / "medreminder_data"
        if _is_writable_dir(d):
            return d

    af = _android_files_dir()
    if af:
        d = af / "medreminder_data"
        if _is_writable_dir(d):
            return d

    d = Path.cwd() / "medreminder_data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    missed_grace_minutes: int = MISSED_GRACE_MINUTES
    missed_sweep_enabled: bool = True
    sweep_interval_seconds: int = SWEEP_INTERVAL_SECONDS
    resync_interval_seconds: int = RESYNC_INTERVAL_SECONDS
    default_snooze_minutes: int = DEFAULT_SNOOZE_MINUTES
    log_max_lines: int = LOG_MAX_LINES

    @property
    def db_path(self) -> Path:
        return self.base_dir / "medicines.db.aes"

    @property
    def key_path(self) -> Path:
        return self.base_dir / ".enc_key"

    @property
    def log_path(self) -> Path:
        return self.base_dir / "app.log"

    @property
    def tmp_dir(self) -> Path:
        return self.base_dir / "tmp"

    @property
    def alarm_registry_path(self) -> Path:
        return self.base_dir / "alarms.json.aes"

    @classmethod
    def from_env(cls, base_dir: Optional[Path] = None) -> "Settings":
        return cls(
            base_dir=Path(base_dir) if base_dir else app_base_dir(),
            missed_grace_minutes=_env_int("MEDREMINDER_MISSED_GRACE_MINUTES", MISSED_GRACE_MINUTES),
            missed_sweep_enabled=_env_bool("MEDREMINDER_MISSED_SWEEP", True),
            sweep_interval_seconds=_env_int("MEDREMINDER_SWEEP_SECONDS", SWEEP_INTERVAL_SECONDS),
            resync_interval_seconds=_env_int("MEDREMINDER_RESYNC_SECONDS", RESYNC_INTERVAL_SECONDS),
            default_snooze_minutes=_env_int("MEDREMINDER_SNOOZE_MINUTES", DEFAULT_SNOOZE_MINUTES),
            log_max_lines=_env_int("MEDREMINDER_LOG_MAX_LINES", LOG_MAX_LINES),
        )
