"""Persisted scan-job state machine.

    detecting -> completed | failed | cancelled

Terminal states are one-way: every terminal UPDATE is guarded by the current
status, so a finished job is never moved again. `detecting` is the only
resumable state, and only while its heartbeat is fresh.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable

from photomind import config
from photomind.errors import JobNotResumable, ScanInProgress, StaleJob, UnknownJob
from photomind.store import VectorStore

logger = logging.getLogger(__name__)


class JobStatus:
    DETECTING = "detecting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
_TERMINAL_SQL = "('completed', 'failed', 'cancelled')"
STALE_MESSAGE = "Task timed out - no heartbeat for 5 minutes"


@dataclass
class ScanJob:
    id: str
    status: str
    total_photos: int
    processed_photos: int
    failed_photos: int
    last_processed_id: int | None
    started_at: float
    completed_at: float | None
    last_heartbeat: float
    error_message: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> dict:
        return asdict(self)


def _job_from_row(row) -> ScanJob:
    return ScanJob(
        id=row["id"],
        status=row["status"],
        total_photos=row["total_photos"],
        processed_photos=row["processed_photos"],
        failed_photos=row["failed_photos"],
        last_processed_id=row["last_processed_id"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        last_heartbeat=row["last_heartbeat"],
        error_message=row["error_message"],
    )


class ScanJobSupervisor:
    def __init__(
        self,
        store: VectorStore,
        stale_after: float = config.STALE_JOB_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._stale_after = stale_after
        self._clock = clock

    def is_stale(self, job: ScanJob, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return not job.terminal and now - job.last_heartbeat > self._stale_after

    # -- lifecycle --

    def create_job(self, total_photos: int) -> ScanJob:
        active = self.get_active_job()
        if active is not None:
            raise ScanInProgress(active.id)
        job_id = str(uuid.uuid4())
        now = self._clock()
        self._store.run(
            """INSERT INTO scan_jobs
               (id, status, total_photos, processed_photos, failed_photos,
                last_processed_id, started_at, completed_at, last_heartbeat, error_message)
               VALUES (?, ?, ?, 0, 0, NULL, ?, NULL, ?, NULL)""",
            (job_id, JobStatus.DETECTING, total_photos, now, now),
        )
        logger.info("Created scan job %s (%d photos)", job_id, total_photos)
        return self.get_job(job_id)

    def heartbeat(self, job_id: str) -> None:
        self._store.run(
            f"UPDATE scan_jobs SET last_heartbeat = ? WHERE id = ? AND status NOT IN {_TERMINAL_SQL}",
            (self._clock(), job_id),
        )

    def record_failure(self, job_id: str) -> None:
        self._store.run(
            f"""UPDATE scan_jobs SET failed_photos = failed_photos + 1, last_heartbeat = ?
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}""",
            (self._clock(), job_id),
        )

    def checkpoint(self, job_id: str, processed: int, last_photo_id: int | None) -> None:
        """Advance the resume cursor. The cursor never moves backwards."""
        self._store.run(
            f"""UPDATE scan_jobs
                SET processed_photos = ?,
                    last_processed_id = CASE
                        WHEN ? IS NULL THEN last_processed_id
                        WHEN last_processed_id IS NULL OR ? > last_processed_id THEN ?
                        ELSE last_processed_id END,
                    last_heartbeat = ?
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}""",
            (processed, last_photo_id, last_photo_id, last_photo_id, self._clock(), job_id),
        )
        logger.info("Checkpoint %s: %d processed, cursor %s", job_id[:8], processed, last_photo_id)

    def complete_job(self, job_id: str, processed: int | None = None) -> None:
        now = self._clock()
        self._store.run(
            f"""UPDATE scan_jobs
                SET status = ?, completed_at = ?, last_heartbeat = ?,
                    processed_photos = COALESCE(?, processed_photos)
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}""",
            (JobStatus.COMPLETED, now, now, processed, job_id),
        )
        logger.info("Scan job %s completed", job_id)

    def fail_job(self, job_id: str, message: str) -> None:
        now = self._clock()
        self._store.run(
            f"""UPDATE scan_jobs
                SET status = ?, error_message = ?, completed_at = ?, last_heartbeat = ?
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}""",
            (JobStatus.FAILED, message, now, now, job_id),
        )
        logger.warning("Scan job %s failed: %s", job_id, message)

    def cancel_job(self, job_id: str) -> None:
        now = self._clock()
        self._store.run(
            f"""UPDATE scan_jobs
                SET status = ?, completed_at = ?, last_heartbeat = ?
                WHERE id = ? AND status NOT IN {_TERMINAL_SQL}""",
            (JobStatus.CANCELLED, now, now, job_id),
        )
        logger.info("Scan job %s cancelled", job_id)

    # -- queries --

    def get_job(self, job_id: str) -> ScanJob:
        rows = self._store.query("SELECT * FROM scan_jobs WHERE id = ?", (job_id,))
        if not rows:
            raise UnknownJob(job_id)
        return _job_from_row(rows[0])

    def get_active_job(self) -> ScanJob | None:
        """Most recent non-terminal job. A stale one is failed first and None returned."""
        rows = self._store.query(
            f"""SELECT * FROM scan_jobs WHERE status NOT IN {_TERMINAL_SQL}
                ORDER BY started_at DESC LIMIT 1"""
        )
        if not rows:
            return None
        job = _job_from_row(rows[0])
        if self.is_stale(job):
            self.fail_job(job.id, STALE_MESSAGE)
            return None
        return job

    def resumable_job(self, job_id: str) -> ScanJob:
        job = self.get_job(job_id)
        if job.terminal:
            raise JobNotResumable(job.id, job.status)
        if self.is_stale(job):
            self.fail_job(job.id, STALE_MESSAGE)
            raise StaleJob(job.id)
        return job

    def reap_stale_jobs(self) -> list[str]:
        """Fail every non-terminal job whose heartbeat is too old. Run on process start."""
        cutoff = self._clock() - self._stale_after
        rows = self._store.query(
            f"SELECT id FROM scan_jobs WHERE status NOT IN {_TERMINAL_SQL} AND last_heartbeat < ?",
            (cutoff,),
        )
        reaped = [r["id"] for r in rows]
        for job_id in reaped:
            self.fail_job(job_id, STALE_MESSAGE)
        if reaped:
            logger.info("Reaped %d stale scan job(s)", len(reaped))
        return reaped

    def list_jobs(self, limit: int = 100) -> list[ScanJob]:
        rows = self._store.query("SELECT * FROM scan_jobs ORDER BY started_at DESC LIMIT ?", (limit,))
        return [_job_from_row(r) for r in rows]

    def stats(self) -> dict:
        counts = {
            r["status"]: r["n"]
            for r in self._store.query("SELECT status, COUNT(*) AS n FROM scan_jobs GROUP BY status")
        }
        return {
            "total": sum(counts.values()),
            "active": sum(n for status, n in counts.items() if status not in TERMINAL),
            "completed": counts.get(JobStatus.COMPLETED, 0),
            "failed": counts.get(JobStatus.FAILED, 0),
            "cancelled": counts.get(JobStatus.CANCELLED, 0),
        }

    def cleanup_jobs(self, before: float) -> int:
        """Delete terminal jobs started before the given timestamp."""
        with self._store.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM scan_jobs WHERE started_at < ? AND status IN {_TERMINAL_SQL}",
                (before,),
            )
            return cursor.rowcount
