"""Live activity file for the photomind daemon.

The daemon writes its state (idle/busy, running operation, latest scan
progress, recent operations) to a JSON file so external monitors can follow
a scan without polling the HTTP API. Writes are atomic (tmp + replace).
"""

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from photomind import config

logger = logging.getLogger(__name__)

MAX_RECENT = 20


class ActivityReporter:
    def __init__(self, name: str = "photomind", activity_dir: Path | None = None):
        self._dir = Path(activity_dir or config.ACTIVITY_DIR)
        self._dir.mkdir(parents=True, exist_ok=True)
        self.path = self._dir / f"{name}.json"
        self._name = name
        self._pid = os.getpid()
        self._lock = threading.Lock()
        self._recent: list[dict] = []
        self._operation: str | None = None
        self._started: float | None = None
        self._progress: dict | None = None
        self._write()

    @contextmanager
    def report(self, operation: str):
        """Mark the daemon busy for the duration of the block."""
        with self._lock:
            self._operation = operation
            self._started = time.time()
            self._progress = None
        self._write()
        failed = None
        try:
            yield self
        except Exception as exc:
            failed = str(exc)
            raise
        finally:
            finished = time.time()
            with self._lock:
                self._recent.insert(0, {
                    "operation": operation,
                    "started_at": self._started,
                    "finished_at": finished,
                    "duration_s": round(finished - self._started, 3),
                    "error": failed,
                })
                del self._recent[MAX_RECENT:]
                self._operation = None
                self._started = None
            self._write()

    def set_progress(self, update: dict) -> None:
        """Record the latest progress update, e.g. ScanProgress.as_update()."""
        with self._lock:
            self._progress = dict(update)
        self._write()

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "server": self._name,
                "pid": self._pid,
                "state": "busy" if self._operation else "idle",
                "operation": self._operation,
                "started_at": self._started,
                "progress": self._progress,
                "recent": list(self._recent),
                "updated_at": time.time(),
            }

    def _write(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(self.snapshot()))
            tmp.replace(self.path)
        except OSError:
            logger.debug("Failed to write activity file: %s", self.path)

    def cleanup(self) -> None:
        self.path.unlink(missing_ok=True)
