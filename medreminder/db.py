# medreminder/db.py
#
# Encrypted SQLite store. The database file only ever exists on disk as
# AES-GCM ciphertext; each operation works on a decrypted temp copy.
import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag

from .crypto import aes_decrypt, aes_encrypt, atomic_write_bytes
from .errors import PersistenceError
from .models import (
    DaySet, HistoryEntry, IntakeStatus, Medicine, Reminder, User, format_time_of_day,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    name TEXT,
    settings TEXT,
    is_premium INTEGER DEFAULT 0,
    premium_expires_at INTEGER,
    onboarding_completed INTEGER DEFAULT 0,
    timezone TEXT DEFAULT 'UTC',
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS medicines (
    med_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    verified_name TEXT NOT NULL,
    generic_name TEXT,
    brand_name TEXT,
    manufacturer TEXT,
    category TEXT,
    form TEXT,
    strength TEXT,
    custom_name TEXT,
    notes TEXT,
    api_source TEXT DEFAULT 'manual',
    api_id TEXT,
    is_active INTEGER DEFAULT 1,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS reminders (
    reminder_id TEXT PRIMARY KEY,
    med_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    time TEXT NOT NULL,              -- "HH:MM" wall clock
    days_mask INTEGER NOT NULL,      -- bit n = weekday n (0=Sunday)
    frequency_type TEXT DEFAULT 'daily',
    interval_days INTEGER,
    start_date INTEGER,
    end_date INTEGER,
    enabled INTEGER DEFAULT 1,
    notification_enabled INTEGER DEFAULT 1,
    sound TEXT DEFAULT 'default',
    snooze_enabled INTEGER DEFAULT 1,
    is_active INTEGER DEFAULT 1,
    last_triggered INTEGER,
    next_trigger INTEGER,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    FOREIGN KEY (med_id) REFERENCES medicines(med_id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS history (
    entry_id TEXT PRIMARY KEY,
    reminder_id TEXT,
    med_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scheduled_time INTEGER NOT NULL,
    actual_time INTEGER,
    status TEXT NOT NULL CHECK (status IN ('taken', 'skipped', 'missed')),
    notes TEXT,
    late_by_minutes INTEGER DEFAULT 0,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    synced INTEGER DEFAULT 0,
    FOREIGN KEY (reminder_id) REFERENCES reminders(reminder_id) ON DELETE SET NULL,
    FOREIGN KEY (med_id) REFERENCES medicines(med_id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_medicines_user ON medicines(user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_reminders_user ON reminders(user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_reminders_med ON reminders(med_id);
CREATE INDEX IF NOT EXISTS idx_reminders_next ON reminders(next_trigger);
CREATE INDEX IF NOT EXISTS idx_history_user ON history(user_id, scheduled_time);
CREATE INDEX IF NOT EXISTS idx_history_medicine ON history(med_id);
CREATE INDEX IF NOT EXISTS idx_history_slot ON history(reminder_id, scheduled_time);
"""

_MEDICINE_FIELDS = (
    "verified_name", "generic_name", "brand_name", "manufacturer", "category", "form",
    "strength", "custom_name", "notes", "api_source", "api_id", "is_active",
)
_USER_FIELDS = (
    "email", "name", "settings", "is_premium", "premium_expires_at",
    "onboarding_completed", "timezone",
)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _now_ts() -> int:
    return int(time.time())


# -------------------------
# Row mapping
# -------------------------
def _row_to_user(row) -> User:
    return User(
        user_id=row["user_id"],
        name=row["name"] or "User",
        email=row["email"],
        settings=json.loads(row["settings"]) if row["settings"] else {},
        is_premium=bool(row["is_premium"]),
        premium_expires_at=row["premium_expires_at"],
        onboarding_completed=bool(row["onboarding_completed"]),
        timezone=row["timezone"] or "UTC",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_medicine(row) -> Medicine:
    d = dict(row)
    d["is_active"] = bool(d["is_active"])
    return Medicine(**d)


def _row_to_reminder(row) -> Reminder:
    return Reminder(
        reminder_id=row["reminder_id"],
        med_id=row["med_id"],
        user_id=row["user_id"],
        time_of_day=row["time"],
        days=DaySet.from_mask(row["days_mask"]),
        recurrence=row["frequency_type"],
        interval_days=row["interval_days"],
        enabled=bool(row["enabled"]),
        notification_enabled=bool(row["notification_enabled"]),
        sound=row["sound"],
        snooze_enabled=bool(row["snooze_enabled"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        next_trigger=row["next_trigger"],
        last_triggered=row["last_triggered"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_history(row) -> HistoryEntry:
    keys = row.keys()
    return HistoryEntry(
        entry_id=row["entry_id"],
        med_id=row["med_id"],
        user_id=row["user_id"],
        reminder_id=row["reminder_id"],
        scheduled_time=row["scheduled_time"],
        actual_time=row["actual_time"],
        status=row["status"],
        late_by_minutes=row["late_by_minutes"] or 0,
        notes=row["notes"],
        created_at=row["created_at"],
        medicine_name=row["medicine_name"] if "medicine_name" in keys else None,
    )


def _reminder_values(r: Reminder) -> Dict[str, Any]:
    return {
        "med_id": r.med_id,
        "user_id": r.user_id,
        "time": format_time_of_day(r.time_of_day),
        "days_mask": r.days.mask,
        "frequency_type": r.recurrence.value,
        "interval_days": r.interval_days,
        "start_date": r.start_date,
        "end_date": r.end_date,
        "enabled": int(bool(r.enabled)),
        "notification_enabled": int(bool(r.notification_enabled)),
        "sound": r.sound,
        "snooze_enabled": int(bool(r.snooze_enabled)),
        "is_active": int(bool(r.is_active)),
    }


# -------------------------
# Encrypted SQLite DB
# -------------------------
class MedicineDB:
    def __init__(self, key: bytes, db_path: Path, tmp_dir: Path):
        self.key = key
        self.db_path = Path(db_path)
        self.tmp_dir = Path(tmp_dir)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self._ensure_db()

    def _tmp_path(self, prefix: str, suffix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}{suffix}"

    def _ensure_db(self):
        with self._write_conn() as conn:
            conn.executescript(SCHEMA)

    @staticmethod
    def _connect(path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _write_conn(self):
        # holds the write lock for the whole decrypt -> write -> encrypt cycle
        with self._lock:
            tmp = self._tmp_path("work", ".db")
            try:
                if self.db_path.exists():
                    atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))
                conn = self._connect(tmp)
                try:
                    yield conn
                    conn.commit()
                finally:
                    conn.close()
                atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
            except (sqlite3.Error, OSError, InvalidTag) as exc:
                raise PersistenceError(f"store write failed: {exc!r}") from exc
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _read_conn(self):
        # snapshot under the lock, query outside it
        tmp = self._tmp_path("read", ".db")
        try:
            with self._lock:
                atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))
            conn = self._connect(tmp)
            try:
                yield conn
            finally:
                conn.close()
        except (sqlite3.Error, OSError, InvalidTag) as exc:
            raise PersistenceError(f"store read failed: {exc!r}") from exc
        finally:
            tmp.unlink(missing_ok=True)

    # -------------------------
    # Users
    # -------------------------
    def create_user(self, user: User) -> str:
        user_id = user.user_id or new_id("user")
        with self._write_conn() as conn:
            conn.execute(
                "INSERT INTO users (user_id, email, name, settings, is_premium, timezone) VALUES (?, ?, ?, ?, ?, ?)",
                (user_id, user.email, user.name or "User", json.dumps(user.settings or {}),
                 int(bool(user.is_premium)), user.timezone or "UTC"),
            )
        return user_id

    def get_user(self, user_id: str) -> Optional[User]:
        with self._read_conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id=?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def first_user(self) -> Optional[User]:
        with self._read_conn() as conn:
            row = conn.execute("SELECT * FROM users ORDER BY created_at, rowid LIMIT 1").fetchone()
        return _row_to_user(row) if row else None

    def update_user(self, user_id: str, **kwargs):
        if "settings" in kwargs:
            kwargs["settings"] = json.dumps(kwargs["settings"] or {})
        self._update("users", "user_id", user_id, _USER_FIELDS, kwargs)

    # -------------------------
    # Medicines
    # -------------------------
    def add_medicine(self, med: Medicine) -> str:
        med_id = med.med_id or new_id("med")
        with self._write_conn() as conn:
            conn.execute("""
                INSERT INTO medicines (
                    med_id, user_id, verified_name, generic_name, brand_name, manufacturer,
                    category, form, strength, custom_name, notes, api_source, api_id, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (med_id, med.user_id, med.verified_name, med.generic_name, med.brand_name,
                  med.manufacturer, med.category, med.form, med.strength, med.custom_name,
                  med.notes, med.api_source or "manual", med.api_id, int(bool(med.is_active))))
        return med_id

    def get_medicine(self, med_id: str) -> Optional[Medicine]:
        with self._read_conn() as conn:
            row = conn.execute("SELECT * FROM medicines WHERE med_id=?", (med_id,)).fetchone()
        return _row_to_medicine(row) if row else None

    def get_medicines(self, user_id: str, active_only=True) -> List[Medicine]:
        q = "SELECT * FROM medicines WHERE user_id=?"
        if active_only:
            q += " AND is_active=1"
        with self._read_conn() as conn:
            rows = conn.execute(q + " ORDER BY created_at DESC, rowid DESC", (user_id,)).fetchall()
        return [_row_to_medicine(r) for r in rows]

    def search_medicines(self, user_id: str, term: str) -> List[Medicine]:
        like = f"%{term}%"
        with self._read_conn() as conn:
            rows = conn.execute("""
                SELECT * FROM medicines
                WHERE user_id=? AND is_active=1
                  AND (verified_name LIKE ? OR brand_name LIKE ? OR generic_name LIKE ? OR custom_name LIKE ?)
                ORDER BY created_at DESC, rowid DESC
            """, (user_id, like, like, like, like)).fetchall()
        return [_row_to_medicine(r) for r in rows]

    def update_medicine(self, med_id: str, **kwargs):
        if "is_active" in kwargs:
            kwargs["is_active"] = int(bool(kwargs["is_active"]))
        self._update("medicines", "med_id", med_id, _MEDICINE_FIELDS, kwargs)

    def deactivate_medicine(self, med_id: str) -> int:
        """Soft delete: clear is_active and drop its reminder rows (history keeps the medicine)."""
        with self._write_conn() as conn:
            n = conn.execute("DELETE FROM reminders WHERE med_id=?", (med_id,)).rowcount
            conn.execute("UPDATE medicines SET is_active=0, updated_at=? WHERE med_id=?", (_now_ts(), med_id))
        return n

    def purge_medicine(self, med_id: str) -> bool:
        """Hard delete; reminders and history go with it via ON DELETE CASCADE."""
        with self._write_conn() as conn:
            return conn.execute("DELETE FROM medicines WHERE med_id=?", (med_id,)).rowcount > 0

    # -------------------------
    # Reminders
    # -------------------------
    def add_reminder(self, rem: Reminder) -> str:
        reminder_id = rem.reminder_id or new_id("rem")
        vals = _reminder_values(rem)
        if vals["start_date"] is None:
            vals["start_date"] = _now_ts()
        cols = ["reminder_id"] + list(vals)
        with self._write_conn() as conn:
            conn.execute(
                f"INSERT INTO reminders ({','.join(cols)}) VALUES ({','.join('?' * len(cols))})",
                [reminder_id] + list(vals.values()),
            )
        return reminder_id

    def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        with self._read_conn() as conn:
            row = conn.execute("SELECT * FROM reminders WHERE reminder_id=?", (reminder_id,)).fetchone()
        return _row_to_reminder(row) if row else None

    def get_reminders(self, user_id: str, order_by: str = "time") -> List[Reminder]:
        order = {"time": "time ASC", "next_trigger": "next_trigger IS NULL, next_trigger ASC"}[order_by]
        with self._read_conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM reminders WHERE user_id=? AND is_active=1 ORDER BY {order}, rowid",
                (user_id,),
            ).fetchall()
        return [_row_to_reminder(r) for r in rows]

    def get_reminders_by_medicine(self, med_id: str, active_only=True) -> List[Reminder]:
        q = "SELECT * FROM reminders WHERE med_id=?"
        if active_only:
            q += " AND is_active=1"
        with self._read_conn() as conn:
            rows = conn.execute(q + " ORDER BY time ASC, rowid", (med_id,)).fetchall()
        return [_row_to_reminder(r) for r in rows]

    def get_schedulable(self) -> List[Tuple[Reminder, Medicine]]:
        """Live reminders of live medicines, for reconciliation and the missed sweep."""
        with self._read_conn() as conn:
            rem_rows = conn.execute("""
                SELECT r.* FROM reminders r JOIN medicines m ON r.med_id = m.med_id
                WHERE r.is_active=1 AND m.is_active=1
                ORDER BY r.time ASC, r.rowid
            """).fetchall()
            med_rows = conn.execute("SELECT * FROM medicines WHERE is_active=1").fetchall()
        meds = {r["med_id"]: _row_to_medicine(r) for r in med_rows}
        return [(rem, meds[rem.med_id]) for rem in map(_row_to_reminder, rem_rows)]

    def count_reminders(self, med_id: str) -> int:
        with self._read_conn() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM reminders WHERE med_id=? AND is_active=1", (med_id,)
            ).fetchone()[0]

    def update_reminder(self, rem: Reminder):
        vals = _reminder_values(rem)
        vals.pop("med_id")
        vals.pop("user_id")
        sets = ", ".join(f"{k}=?" for k in vals)
        with self._write_conn() as conn:
            conn.execute(
                f"UPDATE reminders SET {sets}, updated_at=? WHERE reminder_id=?",
                list(vals.values()) + [_now_ts(), rem.reminder_id],
            )

    def set_next_trigger(self, reminder_id: str, next_ts: Optional[int]):
        with self._write_conn() as conn:
            conn.execute("UPDATE reminders SET next_trigger=? WHERE reminder_id=?", (next_ts, reminder_id))

    def soft_delete_reminder(self, reminder_id: str):
        with self._write_conn() as conn:
            conn.execute(
                "UPDATE reminders SET is_active=0, next_trigger=NULL, updated_at=? WHERE reminder_id=?",
                (_now_ts(), reminder_id),
            )

    # -------------------------
    # History (append-only)
    # -------------------------
    def log_history(self, entry: HistoryEntry) -> str:
        entry_id = entry.entry_id or new_id("hist")
        with self._write_conn() as conn:
            conn.execute("""
                INSERT INTO history (
                    entry_id, reminder_id, med_id, user_id, scheduled_time,
                    actual_time, status, notes, late_by_minutes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (entry_id, entry.reminder_id, entry.med_id, entry.user_id, int(entry.scheduled_time),
                  entry.actual_time, entry.status.value, entry.notes, int(entry.late_by_minutes or 0)))
        return entry_id

    def get_history(self, user_id: str, limit=50) -> List[HistoryEntry]:
        with self._read_conn() as conn:
            rows = conn.execute("""
                SELECT h.*, m.verified_name AS medicine_name
                FROM history h LEFT JOIN medicines m ON h.med_id = m.med_id
                WHERE h.user_id=?
                ORDER BY h.scheduled_time DESC, h.rowid DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()
        return [_row_to_history(r) for r in rows]

    def get_history_by_medicine(self, med_id: str, limit=30) -> List[HistoryEntry]:
        with self._read_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM history WHERE med_id=? ORDER BY scheduled_time DESC, rowid DESC LIMIT ?",
                (med_id, limit),
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    def get_history_by_range(self, user_id: str, start_ts: int, end_ts: int) -> List[HistoryEntry]:
        with self._read_conn() as conn:
            rows = conn.execute("""
                SELECT h.*, m.verified_name AS medicine_name
                FROM history h LEFT JOIN medicines m ON h.med_id = m.med_id
                WHERE h.user_id=? AND h.scheduled_time BETWEEN ? AND ?
                ORDER BY h.scheduled_time DESC, h.rowid DESC
            """, (user_id, start_ts, end_ts)).fetchall()
        return [_row_to_history(r) for r in rows]

    def history_exists(self, reminder_id: str, scheduled_ts: int) -> bool:
        with self._read_conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM history WHERE reminder_id=? AND scheduled_time=? LIMIT 1",
                (reminder_id, scheduled_ts),
            ).fetchone()
        return row is not None

    def adherence_counts(self, since_ts: int, user_id: Optional[str] = None,
                         med_id: Optional[str] = None) -> Dict[str, int]:
        where, args = ["scheduled_time >= ?"], [since_ts]
        if user_id is not None:
            where.append("user_id = ?")
            args.append(user_id)
        if med_id is not None:
            where.append("med_id = ?")
            args.append(med_id)
        with self._read_conn() as conn:
            row = conn.execute(f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status = '{IntakeStatus.TAKEN.value}' THEN 1 ELSE 0 END) AS taken,
                    SUM(CASE WHEN status = '{IntakeStatus.SKIPPED.value}' THEN 1 ELSE 0 END) AS skipped,
                    SUM(CASE WHEN status = '{IntakeStatus.MISSED.value}' THEN 1 ELSE 0 END) AS missed
                FROM history WHERE {' AND '.join(where)}
            """, args).fetchone()
        return {k: int(row[k] or 0) for k in ("total", "taken", "skipped", "missed")}

    # -------------------------
    def _update(self, table: str, key_col: str, key: str, allowed, kwargs: Dict[str, Any]):
        unknown = set(kwargs) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update {table} columns: {sorted(unknown)}")
        if not kwargs:
            return
        sets = ", ".join(f"{k}=?" for k in kwargs)
        with self._write_conn() as conn:
            conn.execute(
                f"UPDATE {table} SET {sets}, updated_at=? WHERE {key_col}=?",
                list(kwargs.values()) + [_now_ts(), key],
            )
