"""HTTP service daemon for photomind.

Owns the PhotoLibrary (store, models, scan queue). MCP servers and other
tools talk to it as thin clients. Only one instance should run at a time.

    python -m photomind.service

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the library (reaps stale scan jobs)
    3. Background thread: warm the face and CLIP models
    Handlers return {"loading": true} with 503 until the library is open.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from dataclasses import asdict

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from photomind import config
from photomind.activity import ActivityReporter
from photomind.errors import (
    JobNotResumable,
    ModelLoadFailure,
    PhotomindError,
    ScanInProgress,
    StaleJob,
    UnknownFace,
    UnknownJob,
    UnknownPerson,
)
from photomind.library import PhotoLibrary

logger = logging.getLogger(__name__)

reporter = ActivityReporter("photomind")
_library: PhotoLibrary | None = None
_library_lock = threading.Lock()
_library_ready = threading.Event()
_match_lock = asyncio.Lock()

_LOADING = JSONResponse({"loading": True}, status_code=503)


def _report_progress(progress) -> None:
    reporter.set_progress(progress.as_update())


def set_library(library: PhotoLibrary | None) -> None:
    """Install an already-built library (used by tests and embedders)."""
    global _library
    with _library_lock:
        _library = library
    if library is None:
        _library_ready.clear()
    else:
        _library_ready.set()


def _create_library() -> PhotoLibrary:
    global _library
    with _library_lock:
        if _library is None:
            _library = PhotoLibrary(config.DB_FILE, on_progress=_report_progress)
    _library_ready.set()
    return _library


def get_library() -> PhotoLibrary:
    _library_ready.wait()
    return _library  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _library_ready.is_set()})


async def status(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    data = await asyncio.to_thread(get_library().status)
    data["activity"] = reporter.snapshot()
    return JSONResponse(data)


async def scan_start(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await _json_body(request)
    with reporter.report("Starting face scan"):
        job_id = await asyncio.to_thread(get_library().start_scan, body.get("total"))
    return JSONResponse({"job_id": job_id})


async def scan_resume(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    job_id = body["job_id"]
    with reporter.report("Resuming face scan"):
        queued = await asyncio.to_thread(get_library().resume_scan, job_id)
    return JSONResponse({"job_id": job_id, "queued": queued})


async def scan_cancel(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    job_id = await asyncio.to_thread(get_library().cancel_scan)
    return JSONResponse({"job_id": job_id})


async def scan_retry(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    retried = await asyncio.to_thread(get_library().retry_failed)
    return JSONResponse({"retried": retried})


async def scan_status(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    library = get_library()
    data = library.get_queue_status()
    data["failed_tasks"] = library.failed_tasks()
    return JSONResponse(data)


async def scan_active(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    job = await asyncio.to_thread(get_library().get_active_job)
    return JSONResponse(job.to_dict() if job else None)


async def scan_jobs(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    limit = int(request.query_params.get("limit", 100))
    library = get_library()
    jobs = await asyncio.to_thread(library.list_jobs, limit)
    return JSONResponse({
        "jobs": [j.to_dict() for j in jobs],
        "stats": library.supervisor.stats(),
    })


async def scan_job(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    job = await asyncio.to_thread(get_library().get_job, request.query_params["id"])
    return JSONResponse(job.to_dict())


async def faces_auto_match(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await _json_body(request)
    async with _match_lock:
        with reporter.report("Matching faces"):
            result = await asyncio.to_thread(get_library().auto_match, body.get("threshold"))
    return JSONResponse(result.to_dict())


async def faces_similar(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    matches = await asyncio.to_thread(
        get_library().find_similar_faces,
        int(body["face_id"]),
        float(body.get("min_similarity", config.SIMILAR_FACE_FLOOR)),
    )
    return JSONResponse([asdict(m) for m in matches])


async def faces_assign(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    async with _match_lock:
        assigned = await asyncio.to_thread(
            get_library().assign_faces, [int(f) for f in body["face_ids"]], int(body["person_id"])
        )
    return JSONResponse({"assigned": assigned})


async def faces_unassign(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    async with _match_lock:
        await asyncio.to_thread(get_library().unassign_face, int(body["face_id"]))
    return JSONResponse({"ok": True})


async def persons(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    people = await asyncio.to_thread(get_library().list_persons)
    return JSONResponse([asdict(p) for p in people])


async def persons_search(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    params = request.query_params
    matches = await asyncio.to_thread(
        get_library().search_persons, params.get("q", ""), int(params.get("limit", 20))
    )
    return JSONResponse([{**asdict(m.person), "score": m.score} for m in matches])


async def persons_photos(request: Request) -> JSONResponse:
    """Photos of one person, by ?id= or by best ?name= match."""
    if not _library_ready.is_set():
        return _LOADING
    params = request.query_params
    library = get_library()
    if "id" in params:
        person_id = int(params["id"])
    else:
        name = params.get("name", "")
        person = await asyncio.to_thread(library.find_person, name)
        if person is None:
            raise UnknownPerson(name)
        person_id = person.id
    year = params.get("year")
    result = await asyncio.to_thread(
        library.person_photos,
        person_id,
        int(year) if year else None,
        int(params.get("limit", 50)),
        int(params.get("offset", 0)),
    )
    return JSONResponse(result.to_dict())


async def persons_merge(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    async with _match_lock:
        merged = await asyncio.to_thread(
            get_library().merge_persons, int(body["source_id"]), int(body["target_id"])
        )
    return JSONResponse({"merged": merged})


async def search(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    with reporter.report("Searching photos"):
        response = await asyncio.to_thread(
            get_library().search,
            body["query"],
            body.get("weights"),
            body.get("intent"),
            int(body.get("limit", config.DEFAULT_LIMIT)),
            float(body.get("min_score", config.MIN_COMBINED_SCORE)),
            body.get("sort_by", "mixed"),
        )
    return JSONResponse(response.to_dict())


async def search_quick(request: Request) -> JSONResponse:
    if not _library_ready.is_set():
        return _LOADING
    body = await request.json()
    matches = await asyncio.to_thread(
        get_library().quick_search, body["query"], int(body.get("top_k", config.DEFAULT_TOP_K))
    )
    return JSONResponse([asdict(m) for m in matches])


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    return await request.json() if raw else {}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR = [
    ((UnknownJob, UnknownPerson, UnknownFace), 404),
    ((ScanInProgress, StaleJob, JobNotResumable), 409),
    ((ModelLoadFailure,), 503),
]


async def photomind_error(request: Request, exc: PhotomindError) -> JSONResponse:
    status_code = 400
    for types, code in _STATUS_BY_ERROR:
        if isinstance(exc, types):
            status_code = code
            break
    message = exc.args[0] if isinstance(exc, KeyError) and exc.args else str(exc)
    logger.info("%s %s -> %d: %s", request.method, request.url.path, status_code, message)
    return JSONResponse({"error": type(exc).__name__, "message": str(message)}, status_code=status_code)


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/scan/start", scan_start, methods=["POST"]),
    Route("/scan/resume", scan_resume, methods=["POST"]),
    Route("/scan/cancel", scan_cancel, methods=["POST"]),
    Route("/scan/retry-failed", scan_retry, methods=["POST"]),
    Route("/scan/status", scan_status, methods=["GET"]),
    Route("/scan/active", scan_active, methods=["GET"]),
    Route("/scan/jobs", scan_jobs, methods=["GET"]),
    Route("/scan/job", scan_job, methods=["GET"]),
    Route("/faces/auto-match", faces_auto_match, methods=["POST"]),
    Route("/faces/similar", faces_similar, methods=["POST"]),
    Route("/faces/assign", faces_assign, methods=["POST"]),
    Route("/faces/unassign", faces_unassign, methods=["POST"]),
    Route("/persons", persons, methods=["GET"]),
    Route("/persons/search", persons_search, methods=["GET"]),
    Route("/persons/photos", persons_photos, methods=["GET"]),
    Route("/persons/merge", persons_merge, methods=["POST"]),
    Route("/search", search, methods=["POST"]),
    Route("/search/quick", search_quick, methods=["POST"]),
]

app = Starlette(routes=routes, exception_handlers={PhotomindError: photomind_error})


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _write_pid() -> None:
    config.SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    config.SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", config.SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    config.SERVICE_PID_FILE.unlink(missing_ok=True)
    if _library is not None:
        _library.close()
    reporter.cleanup()


def _background_startup() -> None:
    """Open the library and warm models without blocking the event loop."""
    def _load():
        library = _create_library()
        logger.info("Library open: %d unprocessed photos", library.store.count_unprocessed_photos())
        try:
            library.provider.ensure_loaded()
            logger.info("Model warmup complete")
        except ModelLoadFailure as exc:
            logger.warning("Model warmup failed: %s", exc)

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _background_startup()

    logger.info("Starting photomind service on %s:%d", config.SERVICE_HOST, config.SERVICE_PORT)
    uvicorn.run(app, host=config.SERVICE_HOST, port=config.SERVICE_PORT, log_level="warning")
