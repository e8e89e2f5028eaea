# medreminder/logs.py
import logging
from pathlib import Path
from threading import RLock
from typing import Optional

_LOG_LOCK = RLock()


# -------------------------
# Logging ring buffer
# -------------------------
class RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                self._lines = self._lines[-self.max_lines:]

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines = []


class FileAndRingHandler(logging.Handler):
    def __init__(self, ring: RingLog, log_path: Optional[Path] = None):
        super().__init__()
        self.ring = ring
        self.log_path = log_path
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        self.ring.add(msg)
        if self.log_path is None:
            return
        try:
            with _LOG_LOCK:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)


def setup_logging(log_path: Optional[Path] = None, max_lines: int = 800) -> RingLog:
    """Attach the ring+file handler to the package logger once; returns the ring."""
    logger = logging.getLogger("medreminder")
    logger.setLevel(logging.INFO)
    for h in logger.handlers:
        if isinstance(h, FileAndRingHandler):
            return h.ring
    ring = RingLog(max_lines=max_lines)
    logger.addHandler(FileAndRingHandler(ring, log_path))
    return ring


def clear_log(ring: RingLog, log_path: Optional[Path] = None):
    ring.clear()
    if log_path is not None:
        with _LOG_LOCK:
            log_path.unlink(missing_ok=True)
    logging.getLogger("medreminder").info("log cleared")
