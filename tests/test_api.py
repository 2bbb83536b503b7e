import io
import time
import zipfile

import pytest
from fastapi.testclient import TestClient

from conftest import make_settings
from docbatch import main
from docbatch.api.v1 import batches as batches_api

TEMPLATE = b"Dear {{name}}, we will write to [email]."
CSV = b"name,email\nAda,ada@example.com\nBob,\nCy,cy@example.com\n"


@pytest.fixture
def client(tmp_path, monkeypatch):
    config = make_settings(tmp_path, housekeeping_interval_seconds=3600)
    monkeypatch.setattr(main, "settings", config)
    monkeypatch.setattr(batches_api, "settings", config)
    with TestClient(main.app) as test_client:
        yield test_client


def _files(template=TEMPLATE, data=CSV, template_name="letter.txt", data_name="people.csv"):
    return {
        "template": (template_name, io.BytesIO(template), "text/plain"),
        "data": (data_name, io.BytesIO(data), "text/csv"),
    }


def _wait_until_done(client, batch_id, timeout=20.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/api/v1/batches/{batch_id}").json()
        if body["status"] in ("completed", "failed", "cancelled"):
            return body
        time.sleep(0.05)
    raise AssertionError("batch did not finish")


def test_health_endpoints(client):
    for path in ("/health", "/api/v1/health"):
        resp = client.get(path)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["queue"]["max_concurrent"] == 3


def test_submit_poll_and_download(client):
    resp = client.post("/api/v1/batches", files=_files(), data={"output_format": "pdf"})
    assert resp.status_code == 202
    body = resp.json()
    batch_id = body["batch_id"]
    assert body["status"] == "created"
    assert body["progress_url"] == f"/api/v1/batches/{batch_id}/progress"
    assert body["estimated_duration"] > 0

    batch = _wait_until_done(client, batch_id)
    assert batch["status"] == "completed"
    assert (batch["total_rows"], batch["completed_count"], batch["failed_count"]) == (3, 3, 0)

    progress = client.get(f"/api/v1/batches/{batch_id}/progress").json()
    assert progress["progress"] == 100

    rows = client.get(f"/api/v1/batches/{batch_id}/rows").json()["rows"]
    assert [r["row_number"] for r in rows] == [1, 2, 3]

    download = client.get(f"/api/v1/batches/{batch_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(download.content)) as zf:
        assert zf.namelist() == ["document_0001.pdf", "document_0002.pdf", "document_0003.pdf"]


def test_json_submission_with_missing_field(client):
    resp = client.post(
        "/api/v1/batches/json",
        json={
            "template_text": TEMPLATE.decode(),
            "data_rows": [
                {"name": "Ada", "email": "a@x.io"},
                {"name": "Bob"},
                {"name": "Cy", "email": "c@x.io"},
            ],
            "output_format": "docx",
        },
    )
    assert resp.status_code == 202
    batch = _wait_until_done(client, resp.json()["batch_id"])
    assert batch["status"] == "completed"
    assert (batch["completed_count"], batch["failed_count"]) == (2, 1)

    rows = client.get(f"/api/v1/batches/{batch['id']}/rows").json()["rows"]
    assert rows[1]["outcome"] == "failed"
    assert rows[1]["error"] == "missing fields: email"


def test_invalid_upload_returns_400(client):
    resp = client.post("/api/v1/batches", files=_files(template_name="letter.exe"))
    assert resp.status_code == 400
    assert "Invalid template format" in resp.json()["detail"]

    resp = client.post("/api/v1/batches", files=_files(), data={"output_format": "odt"})
    assert resp.status_code == 400


def test_oversized_upload_returns_413(client, monkeypatch):
    monkeypatch.setattr(batches_api.settings, "max_data_bytes", 8)
    resp = client.post("/api/v1/batches", files=_files())
    assert resp.status_code == 413


def test_unknown_batch_returns_404(client):
    assert client.get("/api/v1/batches/nope").status_code == 404
    assert client.get("/api/v1/batches/nope/progress").status_code == 404
    assert client.get("/api/v1/batches/nope/rows").status_code == 404
    assert client.get("/api/v1/batches/nope/download").status_code == 404
    assert client.post("/api/v1/batches/nope/cancel").status_code == 404
    assert client.post("/api/v1/batches/nope/retry").status_code == 404


def test_failed_batch_download_conflict_and_retry(client):
    bad_csv = b"name,email\nAda,a@x.io\nBob,b@x.io,extra\n"
    resp = client.post("/api/v1/batches", files=_files(data=bad_csv))
    batch_id = resp.json()["batch_id"]
    batch = _wait_until_done(client, batch_id)
    assert batch["status"] == "failed"
    assert batch["last_error"] == "Inconsistent column counts in data set"

    assert client.get(f"/api/v1/batches/{batch_id}/download").status_code == 409
    assert client.post(f"/api/v1/batches/{batch_id}/cancel").status_code == 409

    retry = client.post(f"/api/v1/batches/{batch_id}/retry")
    assert retry.status_code == 202
    assert _wait_until_done(client, batch_id)["status"] == "failed"


def test_completed_batch_cannot_be_retried(client):
    resp = client.post("/api/v1/batches", files=_files())
    batch_id = resp.json()["batch_id"]
    _wait_until_done(client, batch_id)
    assert client.post(f"/api/v1/batches/{batch_id}/retry").status_code == 409


def test_jobs_endpoints(client):
    resp = client.post("/api/v1/batches", files=_files())
    body = resp.json()
    _wait_until_done(client, body["batch_id"])

    job = client.get(f"/api/v1/jobs/{body['job_id']}").json()
    assert job["status"] == "completed"
    assert job["batch_id"] == body["batch_id"]
    assert job["kind"] == "execute_batch"

    listing = client.get("/api/v1/jobs", params={"status": "completed"}).json()
    assert body["job_id"] in [j["job_id"] for j in listing["jobs"]]

    stats = client.get("/api/v1/jobs/stats").json()
    assert stats["completed"] >= 1
    assert stats["active_jobs"] == 0

    assert client.get("/api/v1/jobs/nope").status_code == 404
    assert client.post(f"/api/v1/jobs/{body['job_id']}/cancel").status_code == 409
    assert client.post(f"/api/v1/jobs/{body['job_id']}/retry").status_code == 409
