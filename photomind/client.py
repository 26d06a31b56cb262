"""HTTP client for the photomind service daemon.

Auto-launches the service if it's not running.
"""

import json
import logging
import subprocess
import sys
import time

import httpx

from photomind import config

logger = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    def __init__(self, status_code: int, error: str, message: str):
        super().__init__(f"{error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message


class ServiceClient:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._base_url = base_url or f"http://{config.SERVICE_HOST}:{config.SERVICE_PORT}"
        self._http = http or httpx.Client(base_url=self._base_url, timeout=600)

    def _is_alive(self) -> bool:
        try:
            resp = self._http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def _ensure_service(self) -> None:
        if self._is_alive():
            return

        logger.info("Service not running, launching...")
        subprocess.Popen(
            [sys.executable, "-m", "photomind.service"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + config.SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            time.sleep(0.5)
            if self._is_alive():
                logger.info("Service is ready")
                return

        raise RuntimeError(f"Service did not start within {config.SERVICE_STARTUP_TIMEOUT}s")

    @staticmethod
    def _check(resp: httpx.Response) -> httpx.Response:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise ServiceError(
                resp.status_code,
                body.get("error", "HTTPError") if isinstance(body, dict) else "HTTPError",
                body.get("message", resp.text) if isinstance(body, dict) else resp.text,
            )
        return resp

    def _post(self, path: str, body: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.post(path, json=body or {}))

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        self._ensure_service()
        return self._check(self._http.get(path, params=params))

    def health(self) -> bool:
        return self._is_alive()

    def status(self) -> dict:
        return self._get("/status").json()

    # -- scans --

    def start_scan(self, total: int | None = None) -> str:
        body = {} if total is None else {"total": total}
        return self._post("/scan/start", body).json()["job_id"]

    def resume_scan(self, job_id: str) -> dict:
        return self._post("/scan/resume", {"job_id": job_id}).json()

    def cancel_scan(self) -> str | None:
        return self._post("/scan/cancel").json()["job_id"]

    def retry_failed(self) -> int:
        return self._post("/scan/retry-failed").json()["retried"]

    def queue_status(self) -> dict:
        return self._get("/scan/status").json()

    def active_job(self) -> dict | None:
        return self._get("/scan/active").json()

    def get_job(self, job_id: str) -> dict:
        return self._get("/scan/job", {"id": job_id}).json()

    def list_jobs(self, limit: int = 100) -> dict:
        return self._get("/scan/jobs", {"limit": str(limit)}).json()

    # -- faces and persons --

    def auto_match(self, threshold: float | None = None) -> dict:
        body = {} if threshold is None else {"threshold": threshold}
        return self._post("/faces/auto-match", body).json()

    def similar_faces(self, face_id: int, min_similarity: float = config.SIMILAR_FACE_FLOOR) -> list[dict]:
        return self._post("/faces/similar", {"face_id": face_id, "min_similarity": min_similarity}).json()

    def assign_faces(self, face_ids: list[int], person_id: int) -> int:
        return self._post("/faces/assign", {"face_ids": face_ids, "person_id": person_id}).json()["assigned"]

    def unassign_face(self, face_id: int) -> None:
        self._post("/faces/unassign", {"face_id": face_id})

    def persons(self) -> list[dict]:
        return self._get("/persons").json()

    def person_photos(self, person_id: int | None = None, name: str | None = None, year: int | None = None,
                      limit: int = 50) -> dict:
        params = {"limit": limit}
        if person_id is not None:
            params["id"] = person_id
        else:
            params["name"] = name or ""
        if year is not None:
            params["year"] = year
        return self._get("/persons/photos", params).json()

    def merge_persons(self, source_id: int, target_id: int) -> int:
        return self._post("/persons/merge", {"source_id": source_id, "target_id": target_id}).json()["merged"]

    # -- search --

    def search(
        self,
        query: str,
        weights: dict | None = None,
        intent: dict | None = None,
        limit: int = config.DEFAULT_LIMIT,
        sort_by: str = "mixed",
    ) -> str:
        body: dict = {"query": query, "limit": limit, "sort_by": sort_by}
        if weights:
            body["weights"] = weights
        if intent:
            body["intent"] = intent
        data = self._post("/search", body).json()
        if not data["results"]:
            return "No matching photos found."
        return json.dumps(data, indent=2)

    def quick_search(self, query: str, top_k: int = config.DEFAULT_TOP_K) -> str:
        results = self._post("/search/quick", {"query": query, "top_k": top_k}).json()
        if not results:
            return "No matching photos found."
        return json.dumps(results, indent=2)
