import threading
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from photomind.detection_queue import DetectionQueue
from photomind.errors import JobNotResumable, ScanInProgress, StaleJob
from photomind.face import FaceDetectionResult
from photomind.jobs import JobStatus
from photomind.library import PhotoLibrary


def _make_photos(tmp_path, library, n, size=(64, 64)):
    ids = []
    for i in range(n):
        path = tmp_path / f"img_{i:03d}.jpg"
        Image.new("RGB", size, color=(i % 256, 10, 10)).save(path)
        ids.append(library.store.add_photo(str(path)))
    return ids


def _provider(faces=True):
    descriptor = np.array([1.0, 0.0, 0.0], dtype=np.float32)
    provider = MagicMock()
    provider.detect_faces.side_effect = lambda path: (
        [FaceDetectionResult((100.0, 100.0, 150.0, 150.0), 0.95, descriptor)] if faces else []
    )
    provider.embed_image.return_value = np.array([0.0, 1.0, 0.0], dtype=np.float32)
    provider.embed_text.return_value = np.array([0.0, 1.0, 0.0], dtype=np.float32)
    provider.status.return_value = {}
    return provider


@pytest.fixture
def library(tmp_path):
    lib = PhotoLibrary(tmp_path / "db" / "photomind.db", provider=_provider())
    yield lib
    lib.close()


def test_start_scan_detects_and_clusters(tmp_path, library):
    _make_photos(tmp_path, library, 3)
    job_id = library.start_scan()
    assert library.wait_for_scan(10)

    job = library.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.total_photos == 3
    assert job.processed_photos == 3
    assert library.store.face_stats()["total_faces"] == 3
    [person] = library.list_persons()
    assert person.face_count == 3
    assert library.get_queue_status()["state"] == "idle"
    assert library.get_active_job() is None


def test_second_scan_rejected_while_running(tmp_path):
    gate = threading.Event()
    provider = _provider(faces=False)
    provider.detect_faces.side_effect = lambda path: gate.wait(5) and []
    lib = PhotoLibrary(tmp_path / "photomind.db", provider=provider)
    _make_photos(tmp_path, lib, 2)

    job_id = lib.start_scan()
    with pytest.raises(ScanInProgress):
        lib.start_scan()
    assert lib.cancel_scan() == job_id
    gate.set()
    assert lib.wait_for_scan(5)
    assert lib.get_job(job_id).status == JobStatus.CANCELLED
    lib.close()


def test_resume_only_enqueues_photos_after_cursor(tmp_path):
    provider = _provider(faces=False)
    lib = PhotoLibrary(tmp_path / "photomind.db", provider=provider)
    ids = _make_photos(tmp_path, lib, 120, size=(8, 8))

    # A run that crashed after 60 photos: the cursor reached the 50th,
    # the next 10 were detected but not yet flushed.
    job = lib.supervisor.create_job(120)
    lib.store.mark_photos_scanned([pid for pid in ids[:50] if pid != ids[10]])
    lib.supervisor.checkpoint(job.id, 50, ids[49])

    queued = lib.resume_scan(job.id)
    assert queued == 70
    assert lib.wait_for_scan(30)

    paths = {call.args[0] for call in provider.detect_faces.call_args_list}
    expected = {lib.store.get_photo_by_id(pid).file_path for pid in ids[50:]}
    assert paths == expected
    # photos at or before the cursor are never picked up again by a resume
    assert [p.id for p in lib.store.get_unprocessed_photos()] == [ids[10]]

    final = lib.get_job(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.processed_photos == 120
    assert final.last_processed_id == ids[99]
    lib.close()


def test_resume_rejects_stale_and_finished_jobs(tmp_path, library):
    stale = library.supervisor.create_job(1)
    library.store.run("UPDATE scan_jobs SET last_heartbeat = 0 WHERE id = ?", (stale.id,))
    with pytest.raises(StaleJob):
        library.resume_scan(stale.id)
    assert library.get_job(stale.id).status == JobStatus.FAILED

    with pytest.raises(JobNotResumable):
        library.resume_scan(stale.id)


def test_stale_jobs_reaped_on_open(tmp_path):
    db = tmp_path / "photomind.db"
    first = PhotoLibrary(db, provider=_provider())
    job = first.supervisor.create_job(5)
    first.store.run("UPDATE scan_jobs SET last_heartbeat = 0 WHERE id = ?", (job.id,))
    first.close()

    second = PhotoLibrary(db, provider=_provider())
    assert second.get_job(job.id).status == JobStatus.FAILED
    second.close()


def test_cancel_without_queue(library):
    assert library.cancel_scan() is None
    job = library.supervisor.create_job(1)
    assert library.cancel_scan() == job.id
    assert library.get_job(job.id).status == JobStatus.CANCELLED


def test_search_accepts_intent_json(tmp_path, library):
    library.store.add_photo("/p/lake.jpg")
    response = library.search("lake", intent='{"type": "keyword", "confidence": 0.9}')
    assert response.intent.type == "keyword"
    assert response.keyword_weight == 0.7
    assert response.results[0].file_name == "lake.jpg"


def test_status_overview(tmp_path, library):
    _make_photos(tmp_path, library, 2)
    status = library.status()
    assert status["unprocessed_photos"] == 2
    assert status["queue"]["state"] == "idle"
    assert status["jobs"]["total"] == 0
    assert status["faces"]["total_faces"] == 0


def test_rescan_without_faces_removes_automatic_person(tmp_path, library):
    _make_photos(tmp_path, library, 2)
    library.start_scan()
    assert library.wait_for_scan(10)
    [person] = library.list_persons()
    assert person.face_count == 2

    queue = DetectionQueue(library.store, _provider(faces=False))
    for photo in library.store.all_photos():
        queue.add_task(photo.id, photo.uuid, photo.file_path)
    queue.start()
    assert queue.wait(10)

    assert library.list_persons() == []
    assert library.store.face_stats()["total_faces"] == 0


def test_find_person_and_photos(tmp_path, library):
    _make_photos(tmp_path, library, 2)
    library.start_scan()
    assert library.wait_for_scan(10)
    [person] = library.list_persons()

    assert library.find_person("unnamed").id == person.id
    assert library.find_person("") is None
    assert library.find_person("nobody") is None
    photos = library.person_photos(person.id)
    assert photos.total == 2
    assert len(library.person_faces(person.id)) == 2
