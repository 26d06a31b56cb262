import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from photomind import config

logger = logging.getLogger(__name__)

STAGES = ("scanning", "detecting", "clustering", "completed", "cancelled", "error")
TERMINAL_STAGES = frozenset({"completed", "cancelled", "error"})


@dataclass
class ScanProgress:
    stage: str
    current: int = 0
    total: int = 0
    detected_faces: int = 0
    current_file: str = ""
    job_id: str | None = None
    error: str | None = None

    def __post_init__(self):
        if self.stage not in STAGES:
            raise ValueError(f"unknown scan stage {self.stage!r}")

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def as_update(self) -> dict:
        """The {current, total, currentFile, status} shape subscribers consume."""
        update = {
            "current": self.current,
            "total": self.total,
            "currentFile": self.current_file,
            "status": self.stage,
            "detectedFaces": self.detected_faces,
        }
        if self.job_id:
            update["jobId"] = self.job_id
        if self.error:
            update["error"] = self.error
        return update


ProgressCallback = Callable[[ScanProgress], None]


class ProgressThrottle:
    """Forward progress at most once per interval; terminal stages always pass."""

    def __init__(
        self,
        callback: ProgressCallback | None,
        interval: float = config.PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sent: float | None = None
        self.latest: ScanProgress | None = None

    def __call__(self, progress: ScanProgress) -> bool:
        """Returns True when the update was forwarded."""
        with self._lock:
            self.latest = progress
            now = self._clock()
            due = self._last_sent is None or now - self._last_sent >= self._interval
            if not (due or progress.terminal or progress.stage != "detecting"):
                return False
            self._last_sent = now
        if self._callback is not None:
            try:
                self._callback(progress)
            except Exception:
                logger.warning("Progress subscriber failed", exc_info=True)
        return True
