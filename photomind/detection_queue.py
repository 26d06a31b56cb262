"""Face-detection ingestion queue.

Drains a FIFO of (photo_id, photo_uuid, file_path) tasks on a worker
thread. For each photo: detect faces, scale the detector-space boxes to the
photo's real size, crop each face, embed the crop, and replace the photo's
detections in the store.

    start() -> worker thread -> _drain() x max_concurrent -> _finalize()

The worker thread is the single source of truth for liveness: `is_running`
asks the thread, there is no flag to fall out of sync after a crash. The
resume cursor advances every CHECKPOINT_INTERVAL photos, so after a crash at
most CHECKPOINT_INTERVAL - 1 photos past the cursor are detected again.
Detections are replaced wholesale per photo, which makes that repeat safe.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from PIL import Image

from photomind import config
from photomind.embedding import to_data_url
from photomind.errors import PhotoFileNotFound, StoreError
from photomind.progress import ProgressCallback, ProgressThrottle, ScanProgress
from photomind.store import BoundingBox, NewDetection

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class DetectionTask:
    photo_id: int
    photo_uuid: str
    file_path: str
    status: str = PENDING
    error: str | None = None
    faces: int = 0

    def to_dict(self) -> dict:
        return {
            "photo_id": self.photo_id,
            "photo_uuid": self.photo_uuid,
            "file_path": self.file_path,
            "status": self.status,
            "error": self.error,
            "faces": self.faces,
        }


def scale_box(box, width: int, height: int, detector_size: int = config.DETECTOR_INPUT_SIZE):
    """Map an (x, y, w, h) box from the square detector space to image pixels."""
    sx = width / detector_size
    sy = height / detector_size
    x, y, w, h = box
    return x * sx, y * sy, w * sx, h * sy


def crop_region(image: Image.Image, box) -> Image.Image | None:
    """Crop an image-space box clamped to the image bounds, resized for embedding."""
    x, y, w, h = box
    left = max(0, int(round(x)))
    top = max(0, int(round(y)))
    right = min(image.width, int(round(x + w)))
    bottom = min(image.height, int(round(y + h)))
    if right <= left or bottom <= top:
        return None
    crop = image.crop((left, top, right, bottom))
    return crop.resize((config.FACE_CROP_SIZE, config.FACE_CROP_SIZE), Image.LANCZOS)


class DetectionQueue:
    def __init__(
        self,
        store,
        provider,
        supervisor=None,
        clustering=None,
        job_id: str | None = None,
        max_concurrent: int = config.MAX_CONCURRENT_TASKS,
        checkpoint_interval: int = config.CHECKPOINT_INTERVAL,
        on_progress: ProgressCallback | None = None,
        initial_processed: int = 0,
    ):
        self._store = store
        self._provider = provider
        self._supervisor = supervisor
        self._clustering = clustering
        self.job_id = job_id
        self.max_concurrent = max(1, max_concurrent)
        self._checkpoint_interval = checkpoint_interval
        self._progress = ProgressThrottle(on_progress)

        self._lock = threading.Lock()
        self._tasks: list[DetectionTask] = []
        self._abort = threading.Event()
        self._thread: threading.Thread | None = None
        self._processed = initial_processed
        self._detected_faces = 0
        self._unflushed: list[int] = []
        self._fatal: str | None = None
        self.last_outcome: str | None = None

    # -- task intake --

    def add_task(self, photo_id: int, photo_uuid: str, file_path: str) -> bool:
        with self._lock:
            if any(t.photo_id == photo_id and t.status in (PENDING, PROCESSING) for t in self._tasks):
                return False
            self._tasks.append(DetectionTask(photo_id, photo_uuid, file_path))
            return True

    def add_batch(self, tasks) -> int:
        count = 0
        for photo_id, photo_uuid, file_path in tasks:
            count += self.add_task(photo_id, photo_uuid, file_path)
        return count

    def add_from_store(
        self,
        limit: int | None = None,
        after_id: int | None = None,
        page_size: int = config.UNPROCESSED_BATCH_LIMIT,
    ) -> int:
        """Enqueue unprocessed photos (ascending id, strictly after after_id).

        Pages through the store until exhausted, or until limit photos are queued.
        """
        added = 0
        cursor = after_id
        while limit is None or added < limit:
            size = page_size if limit is None else min(page_size, limit - added)
            photos = self._store.get_unprocessed_photos(limit=size, after_id=cursor)
            if not photos:
                break
            added += self.add_batch((p.id, p.uuid, p.file_path) for p in photos)
            cursor = photos[-1].id
        logger.info("Queued %d unprocessed photos (after id %s)", added, after_id)
        return added

    def resume_from_checkpoint(self, last_processed_id: int | None, limit: int | None = None) -> int:
        return self.add_from_store(limit=limit, after_id=last_processed_id)

    # -- lifecycle --

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> str:
        if not self.is_running:
            return "idle"
        return "draining" if self._abort.is_set() else "running"

    def start(self) -> bool:
        """Spawn the worker. Returns False when a live worker already exists."""
        if self.is_running:
            return False
        if self._thread is not None:
            logger.debug("Clearing finished worker handle")
            self._thread = None
        self._abort.clear()
        self._fatal = None
        self._thread = threading.Thread(target=self._run, name="detection-queue", daemon=True)
        self._thread.start()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Join the worker. Returns True once it has exited."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running

    def cancel(self) -> None:
        """Stop after the in-flight task. Written detections are kept."""
        self._abort.set()
        if not self.is_running and self.job_id and self._supervisor is not None:
            self._flush_scanned()
            self._supervisor.cancel_job(self.job_id)
            self.last_outcome = "cancelled"
        logger.info("Detection queue cancel requested")

    def clear(self) -> None:
        self.cancel()
        with self._lock:
            self._tasks = [t for t in self._tasks if t.status == PROCESSING]

    def retry_failed(self) -> int:
        with self._lock:
            failed = [t for t in self._tasks if t.status == FAILED]
            for task in failed:
                task.status = PENDING
                task.error = None
        logger.info("Retrying %d failed tasks", len(failed))
        if failed:
            self.start()
        return len(failed)

    # -- introspection --

    def tasks(self) -> list[DetectionTask]:
        with self._lock:
            return list(self._tasks)

    def failed_tasks(self) -> list[DetectionTask]:
        with self._lock:
            return [t for t in self._tasks if t.status == FAILED]

    def stats(self) -> dict:
        with self._lock:
            counts = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
            for task in self._tasks:
                counts[task.status] += 1
            return {
                "total": len(self._tasks),
                "pending": counts[PENDING],
                "processing": counts[PROCESSING],
                "completed": counts[COMPLETED],
                "failed": counts[FAILED],
                "detected_faces": self._detected_faces,
            }

    def status(self) -> dict:
        with self._lock:
            current = next((t.file_path for t in self._tasks if t.status == PROCESSING), None)
        return {
            "state": self.state,
            "is_running": self.is_running,
            "job_id": self.job_id,
            "current_file": current,
            "last_outcome": self.last_outcome,
            **self.stats(),
        }

    # -- worker --

    def _next_task(self) -> DetectionTask | None:
        with self._lock:
            for task in self._tasks:
                if task.status == PENDING:
                    task.status = PROCESSING
                    return task
        return None

    def _run(self) -> None:
        started = time.time()
        total = self.stats()["total"]
        logger.info("Detection queue started: %d tasks, job %s", total, self.job_id)
        if self.max_concurrent == 1:
            self._drain()
        else:
            with ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="detect") as pool:
                for future in [pool.submit(self._drain) for _ in range(self.max_concurrent)]:
                    future.result()
        self._finalize()
        logger.info("Detection queue finished in %.1fs: %s", time.time() - started, self.stats())

    def _drain(self) -> None:
        while not self._abort.is_set() and self._fatal is None:
            task = self._next_task()
            if task is None:
                return
            self._emit("detecting", task.file_path)
            try:
                task.faces = self._process(task)
                task.status = COMPLETED
            except StoreError as exc:
                task.status = FAILED
                task.error = str(exc)
                self._fatal = str(exc)
                logger.error("Store write failed for photo %s, aborting scan: %s", task.photo_id, exc)
                return
            except Exception as exc:
                task.status = FAILED
                task.error = str(exc) or type(exc).__name__
                logger.warning("Detection failed for %s: %s", task.file_path, task.error)
                if self.job_id and self._supervisor is not None:
                    self._record_failure()
            try:
                self._after_task(task)
            except StoreError as exc:
                self._fatal = str(exc)
                logger.error("Job bookkeeping failed, aborting scan: %s", exc)
                return

    def _record_failure(self) -> None:
        try:
            self._supervisor.record_failure(self.job_id)
        except StoreError as exc:
            self._fatal = str(exc)

    def _process(self, task: DetectionTask) -> int:
        if not os.path.exists(task.file_path):
            raise PhotoFileNotFound(task.file_path)
        found = self._provider.detect_faces(task.file_path)
        detections = []
        if found:
            with Image.open(task.file_path) as img:
                image = img.convert("RGB")
            for result in found:
                semantic = None
                crop = crop_region(image, scale_box(result.box, image.width, image.height))
                if crop is not None:
                    try:
                        semantic = self._provider.embed_image(to_data_url(crop))
                    except Exception:
                        logger.warning("Semantic embedding failed for a face in %s", task.file_path, exc_info=True)
                detections.append(NewDetection(
                    box=BoundingBox(*result.box),
                    confidence=result.confidence,
                    face_embedding=result.descriptor,
                    semantic_embedding=semantic,
                ))
        self._store.replace_detections(task.photo_id, detections)
        logger.debug("%d faces in photo %s", len(detections), task.photo_id)
        return len(detections)

    def _after_task(self, task: DetectionTask) -> None:
        with self._lock:
            self._processed += 1
            self._detected_faces += task.faces
            if task.status == COMPLETED:
                self._unflushed.append(task.photo_id)
            processed = self._processed
            due = processed % self._checkpoint_interval == 0
        if self.job_id and self._supervisor is not None:
            self._supervisor.heartbeat(self.job_id)
        if due:
            self._checkpoint(processed)

    def _checkpoint(self, processed: int) -> None:
        self._flush_scanned()
        if self.job_id and self._supervisor is not None:
            self._supervisor.checkpoint(self.job_id, processed, self._safe_cursor())

    def _flush_scanned(self) -> None:
        with self._lock:
            ids, self._unflushed = self._unflushed, []
        self._store.mark_photos_scanned(ids)

    def _safe_cursor(self) -> int | None:
        """Highest photo id such that every earlier task in FIFO order is finished."""
        cursor = None
        with self._lock:
            for task in self._tasks:
                if task.status in (PENDING, PROCESSING):
                    break
                cursor = task.photo_id if cursor is None else max(cursor, task.photo_id)
        return cursor

    def _finalize(self) -> None:
        stats = self.stats()
        try:
            self._flush_scanned()
        except StoreError as exc:
            self._fatal = self._fatal or str(exc)

        if self._abort.is_set() and self._fatal is None:
            outcome = "cancelled"
        elif self._fatal is not None:
            outcome = "failed"
        elif stats["total"] > 0 and stats["failed"] == stats["total"]:
            outcome = "all-failed"
        else:
            outcome = "completed"
        self.last_outcome = outcome

        if self.job_id and self._supervisor is not None:
            try:
                if outcome == "cancelled":
                    self._supervisor.cancel_job(self.job_id)
                elif outcome == "failed":
                    self._supervisor.fail_job(self.job_id, self._fatal)
                elif outcome == "all-failed":
                    self._supervisor.fail_job(self.job_id, "All tasks failed")
                else:
                    self._supervisor.complete_job(self.job_id, processed=self._processed)
            except StoreError:
                logger.exception("Could not finalize scan job %s", self.job_id)

        if outcome == "completed" and self._detected_faces > 0 and self._clustering is not None:
            self._emit("clustering", "")
            try:
                result = self._clustering.auto_match()
                logger.info(
                    "Post-scan clustering: %d matched, %d persons created",
                    result.matched, result.persons_created,
                )
            except Exception:
                logger.warning("Post-scan clustering failed", exc_info=True)

        stage = {"cancelled": "cancelled", "completed": "completed"}.get(outcome, "error")
        error = self._fatal if outcome == "failed" else ("All tasks failed" if outcome == "all-failed" else None)
        self._emit(stage, "", error=error)

    def _emit(self, stage: str, current_file: str, error: str | None = None) -> None:
        stats = self.stats()
        self._progress(ScanProgress(
            stage=stage,
            current=stats["completed"] + stats["failed"],
            total=stats["total"],
            detected_faces=stats["detected_faces"],
            current_file=current_file,
            job_id=self.job_id,
            error=error,
        ))
