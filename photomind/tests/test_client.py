import json
from unittest.mock import MagicMock

import httpx
import pytest

from photomind import client as client_module
from photomind import config
from photomind.client import ServiceClient, ServiceError


def _client(routes: dict) -> ServiceClient:
    """ServiceClient over a mock transport. routes maps (method, path) to (status, body)."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/health":
            return httpx.Response(200, json={"ok": True, "ready": True})
        status, body = routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    http = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://photomind.test")
    svc = ServiceClient(base_url="http://photomind.test", http=http)
    svc.seen = seen
    return svc


def test_start_scan_returns_job_id():
    svc = _client({("POST", "/scan/start"): (200, {"job_id": "abc"})})
    assert svc.start_scan(10) == "abc"
    body = json.loads(svc.seen[-1].content)
    assert body == {"total": 10}


def test_error_body_becomes_service_error():
    svc = _client({("POST", "/scan/resume"): (409, {"error": "JobNotResumable", "message": "done"})})
    with pytest.raises(ServiceError) as info:
        svc.resume_scan("abc")
    assert info.value.status_code == 409
    assert info.value.error == "JobNotResumable"
    assert info.value.message == "done"


def test_search_formats_results():
    svc = _client({("POST", "/search"): (200, {"results": [{"photo_id": 1}], "total": 1})})
    text = svc.search("lake", intent={"type": "keyword"})
    assert json.loads(text)["total"] == 1
    body = json.loads(svc.seen[-1].content)
    assert body["intent"] == {"type": "keyword"}
    assert "weights" not in body


def test_empty_search():
    svc = _client({
        ("POST", "/search"): (200, {"results": [], "total": 0}),
        ("POST", "/search/quick"): (200, []),
    })
    assert svc.search("nothing") == "No matching photos found."
    assert svc.quick_search("nothing") == "No matching photos found."


def test_persons_and_merge():
    svc = _client({
        ("GET", "/persons"): (200, [{"id": 1, "display_name": "Unnamed 1", "face_count": 2}]),
        ("POST", "/persons/merge"): (200, {"merged": 2}),
    })
    assert svc.persons()[0]["id"] == 1
    assert svc.merge_persons(1, 2) == 2


def test_dead_service_is_launched(monkeypatch):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    popen = MagicMock()
    monkeypatch.setattr(client_module.subprocess, "Popen", popen)
    monkeypatch.setattr(config, "SERVICE_STARTUP_TIMEOUT", 0)

    http = httpx.Client(transport=httpx.MockTransport(refuse), base_url="http://photomind.test")
    svc = ServiceClient(base_url="http://photomind.test", http=http)
    assert not svc.health()
    with pytest.raises(RuntimeError):
        svc.status()
    assert popen.call_args[0][0][1:] == ["-m", "photomind.service"]


def test_person_photos_query_params():
    svc = _client({("GET", "/persons/photos"): (200, {"person": {"id": 1}, "photos": [], "total": 0})})
    svc.person_photos(name="alice", year=2021, limit=5)
    params = dict(svc.seen[-1].url.params)
    assert params == {"name": "alice", "year": "2021", "limit": "5"}

    svc.person_photos(person_id=7)
    assert dict(svc.seen[-1].url.params) == {"id": "7", "limit": "50"}
