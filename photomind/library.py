"""PhotoLibrary: one object owning the store, models, jobs and the live queue.

Every scan operation names its job explicitly. The only mutable handle is
the current DetectionQueue, owned by this instance.
"""

import logging
import threading
from pathlib import Path

from photomind import config
from photomind.clustering import AutoMatchResult, ClusteringEngine, PersonMatch, PersonPhotos, SimilarFace
from photomind.detection_queue import DetectionQueue
from photomind.embedding import EmbeddingProvider
from photomind.errors import ScanInProgress
from photomind.intent import QueryIntent
from photomind.jobs import ScanJob, ScanJobSupervisor
from photomind.keyword import KeywordMatcher
from photomind.progress import ProgressCallback
from photomind.retrieval import RetrievalEngine, SearchResponse
from photomind.semantic import VectorMatch, VectorMatcher
from photomind.store import FaceDetection, Person, VectorStore

logger = logging.getLogger(__name__)


class PhotoLibrary:
    def __init__(
        self,
        db_path: Path | str | None = None,
        provider: EmbeddingProvider | None = None,
        store: VectorStore | None = None,
        on_progress: ProgressCallback | None = None,
        max_concurrent: int = config.MAX_CONCURRENT_TASKS,
    ):
        self.store = store or VectorStore(db_path or config.DB_FILE)
        self.provider = provider or EmbeddingProvider()
        self.supervisor = ScanJobSupervisor(self.store)
        self.clustering = ClusteringEngine(self.store)
        self.retrieval = RetrievalEngine(
            KeywordMatcher(self.store),
            VectorMatcher(self.store, self.provider),
        )
        self.on_progress = on_progress
        self.max_concurrent = max_concurrent
        self._queue: DetectionQueue | None = None
        self._queue_lock = threading.Lock()
        self.supervisor.reap_stale_jobs()

    # -- scans --

    def _new_queue(self, job: ScanJob) -> DetectionQueue:
        return DetectionQueue(
            self.store,
            self.provider,
            supervisor=self.supervisor,
            clustering=self.clustering,
            job_id=job.id,
            max_concurrent=self.max_concurrent,
            on_progress=self.on_progress,
            initial_processed=job.processed_photos,
        )

    def _ensure_idle(self) -> None:
        if self._queue is not None and self._queue.is_running:
            raise ScanInProgress(self._queue.job_id or "")

    def start_scan(self, total_photos: int | None = None) -> str:
        """Create a job over every unprocessed photo and start draining. Returns the job id."""
        with self._queue_lock:
            self._ensure_idle()
            total = self.store.count_unprocessed_photos() if total_photos is None else total_photos
            job = self.supervisor.create_job(total)
            queue = self._new_queue(job)
            queue.add_from_store()
            self._queue = queue
            queue.start()
        return job.id

    def resume_scan(self, job_id: str) -> int:
        """Restart a detecting job from its checkpoint. Returns the number of queued photos."""
        with self._queue_lock:
            self._ensure_idle()
            job = self.supervisor.resumable_job(job_id)
            queue = self._new_queue(job)
            queued = queue.resume_from_checkpoint(job.last_processed_id)
            self._queue = queue
            queue.start()
        logger.info("Resumed job %s after photo %s: %d queued", job_id, job.last_processed_id, queued)
        return queued

    def cancel_scan(self) -> str | None:
        """Cancel the running scan, or the active job if no queue is live."""
        queue = self._queue
        if queue is not None and queue.job_id and (queue.is_running or not self._job_terminal(queue.job_id)):
            queue.cancel()
            return queue.job_id
        job = self.supervisor.get_active_job()
        if job is None:
            return None
        self.supervisor.cancel_job(job.id)
        return job.id

    def _job_terminal(self, job_id: str) -> bool:
        return self.supervisor.get_job(job_id).terminal

    def wait_for_scan(self, timeout: float | None = None) -> bool:
        queue = self._queue
        return True if queue is None else queue.wait(timeout)

    def get_queue_status(self) -> dict:
        if self._queue is None:
            return {"state": "idle", "is_running": False, "job_id": None, "total": 0,
                    "pending": 0, "processing": 0, "completed": 0, "failed": 0, "detected_faces": 0}
        return self._queue.status()

    def retry_failed(self) -> int:
        if self._queue is None:
            return 0
        return self._queue.retry_failed()

    def failed_tasks(self) -> list[dict]:
        if self._queue is None:
            return []
        return [t.to_dict() for t in self._queue.failed_tasks()]

    def get_active_job(self) -> ScanJob | None:
        return self.supervisor.get_active_job()

    def get_job(self, job_id: str) -> ScanJob:
        return self.supervisor.get_job(job_id)

    def list_jobs(self, limit: int = 100) -> list[ScanJob]:
        return self.supervisor.list_jobs(limit)

    # -- faces and persons --

    def auto_match(self, threshold: float | None = None) -> AutoMatchResult:
        return self.clustering.auto_match(threshold=threshold)

    def merge_persons(self, source_id: int, target_id: int) -> int:
        return self.clustering.merge_persons(source_id, target_id)

    def unassign_face(self, face_id: int) -> None:
        self.clustering.unassign_face(face_id)

    def assign_faces(self, face_ids: list[int], person_id: int) -> int:
        return self.clustering.assign_faces_to_person(face_ids, person_id)

    def find_similar_faces(self, face_id: int, min_similarity: float = config.SIMILAR_FACE_FLOOR) -> list[SimilarFace]:
        return self.clustering.find_similar_faces(face_id, min_similarity)

    def list_persons(self) -> list[Person]:
        return self.store.list_persons()

    def search_persons(self, query: str, limit: int = 20) -> list[PersonMatch]:
        return self.clustering.search_persons(query, limit)

    def find_person(self, name: str) -> Person | None:
        """Best name match for a query, or None."""
        if not name.strip():
            return None
        matches = self.clustering.search_persons(name, limit=1000)
        if not matches:
            return None
        return max(matches, key=lambda m: m.score).person

    def person_photos(
        self, person_id: int, year: int | None = None, limit: int = 50, offset: int = 0
    ) -> PersonPhotos:
        return self.clustering.person_photos(person_id, year=year, limit=limit, offset=offset)

    def person_faces(self, person_id: int) -> list[FaceDetection]:
        return self.clustering.person_faces(person_id)

    # -- search --

    def search(
        self,
        query: str,
        weights=None,
        intent=None,
        limit: int = config.DEFAULT_LIMIT,
        min_score: float = config.MIN_COMBINED_SCORE,
        sort_by: str = "mixed",
    ) -> SearchResponse:
        if isinstance(intent, str):
            intent = QueryIntent.from_json(intent, original=query)
        elif isinstance(intent, dict):
            intent = QueryIntent.from_dict(intent, original=query)
        return self.retrieval.search(query, weights=weights, intent=intent, limit=limit, min_score=min_score, sort_by=sort_by)

    def quick_search(self, query: str, top_k: int = config.DEFAULT_TOP_K) -> list[VectorMatch]:
        return self.retrieval.quick_search(query, top_k)

    # -- overview --

    def status(self) -> dict:
        return {
            "models": self.provider.status(),
            "queue": self.get_queue_status(),
            "jobs": self.supervisor.stats(),
            "faces": self.clustering.stats(),
            "unprocessed_photos": self.store.count_unprocessed_photos(),
        }

    def close(self) -> None:
        if self._queue is not None:
            self._queue.cancel()
            self._queue.wait(5)
        self.provider.close()
        self.store.close()
