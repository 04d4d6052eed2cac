"""HTTP tests for the job API, run in-process through ASGITransport."""
import io
import json
import zipfile
from pathlib import Path

import pytest

from doc_jobs.pipeline.models import JobStatus, Operation, QueueMessage


def _files(*names):
    return [("files", (name, f"content of {name}".encode(), "application/octet-stream")) for name in names]


def _stored_uploads(data_dir):
    owner = data_dir / "uploads" / "user-1"
    return sorted(p.name for p in owner.iterdir()) if owner.exists() else []


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_convert_job(client, broker, store):
    r = await client.post("/jobs/convert", files=_files("a.txt", "b.png"), data={"owner_id": "user-1"})
    assert r.status_code == 202
    body = r.json()
    assert body["operation"] == "convert"
    assert body["status"] == "pending"
    assert r.headers["location"] == f"/jobs/{body['id']}"
    assert body["links"]["events"] == f"/jobs/{body['id']}/events"

    job = store.get(body["id"])
    assert job.original_file_names == ["a.txt", "b.png"]
    assert all(Path(p).read_bytes().startswith(b"content of") for p in job.input_paths)

    (raw,) = broker.queues[Operation.convert]
    assert QueueMessage.decode(raw).job_id == body["id"]


@pytest.mark.asyncio
async def test_create_split_job_keeps_range(client, store):
    r = await client.post(
        "/jobs/split",
        files=_files("book.pdf"),
        data={"owner_id": "user-1", "split_start": "2", "split_end": "4"},
    )
    assert r.status_code == 202
    job = store.get(r.json()["id"])
    assert (job.split_range.start, job.split_range.end) == (2, 4)


@pytest.mark.asyncio
async def test_split_without_range_is_rejected(client, broker, data_dir):
    r = await client.post("/jobs/split", files=_files("book.pdf"), data={"owner_id": "user-1"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_request"
    assert not (data_dir / "jobs").exists() or list((data_dir / "jobs").iterdir()) == []
    assert _stored_uploads(data_dir) == []
    assert broker.queues[Operation.split] == []


@pytest.mark.asyncio
async def test_missing_owner_or_files_is_rejected(client):
    r = await client.post("/jobs/merge", files=_files("a.pdf"))
    assert r.status_code == 400
    r = await client.post("/jobs/merge", data={"owner_id": "user-1"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_unknown_operation(client):
    r = await client.post("/jobs/compress", files=_files("a.pdf"), data={"owner_id": "user-1"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_broker_down_fails_job_and_reports_it(client, broker, store, data_dir):
    broker.down = True
    r = await client.post("/jobs/convert", files=_files("a.txt"), data={"owner_id": "user-1"})
    assert r.status_code == 500
    detail = r.json()["detail"]
    assert detail["code"] == "dispatch_failed"
    job = store.get(detail["job_id"])
    assert job.status is JobStatus.failed
    assert job.error_message == "Failed to queue job for processing"
    assert _stored_uploads(data_dir) == []


@pytest.mark.asyncio
async def test_get_job(client, completed_job):
    job = completed_job([("a.pdf", b"%PDF-a")])
    r = await client.get(f"/jobs/{job.id}")
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == job.id
    assert body["status"] == "completed"
    assert body["ownerId"] == "user-1"
    assert body["outputPaths"] == job.output_paths


@pytest.mark.asyncio
async def test_get_unknown_job(client):
    r = await client.get("/jobs/" + "0" * 32)
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_download_single_file(client, completed_job):
    job = completed_job([("a.pdf", b"%PDF-a"), ("b.pdf", b"%PDF-bbb")])
    r = await client.get(f"/jobs/{job.id}/result/0")
    assert r.status_code == 200
    assert r.content == b"%PDF-a"
    assert r.headers["content-type"] == "application/pdf"
    assert r.headers["content-length"] == str(len(b"%PDF-a"))
    assert r.headers["content-disposition"] == 'attachment; filename="a.pdf"'


@pytest.mark.asyncio
async def test_download_archive(client, completed_job):
    job = completed_job([("a.pdf", b"%PDF-a"), ("b.pdf", b"%PDF-bbb")])
    r = await client.get(f"/jobs/{job.id}/result")
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/zip"
    assert r.headers["content-disposition"] == f'attachment; filename="convert_{job.id}.zip"'
    with zipfile.ZipFile(io.BytesIO(r.content)) as archive:
        assert sorted(archive.namelist()) == ["a.pdf", "b.pdf"]
        assert archive.read("b.pdf") == b"%PDF-bbb"


@pytest.mark.asyncio
async def test_download_before_completion(client):
    created = await client.post("/jobs/convert", files=_files("a.txt"), data={"owner_id": "user-1"})
    r = await client.get(f"/jobs/{created.json()['id']}/result")
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "not_ready"


@pytest.mark.asyncio
async def test_download_bad_index(client, completed_job):
    job = completed_job([("a.pdf", b"%PDF-a")])
    r = await client.get(f"/jobs/{job.id}/result/3")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "file_not_found"


@pytest.mark.asyncio
async def test_download_unknown_job(client):
    r = await client.get("/jobs/" + "0" * 32 + "/result")
    assert r.status_code == 404


@pytest.fixture
def fresh_sse_state():
    # sse-starlette keeps a process-wide exit event bound to the first loop.
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = None
    yield
    AppStatus.should_exit_event = None


@pytest.mark.asyncio
async def test_events_for_unknown_job_send_one_error_frame(client, fresh_sse_state):
    async with client.stream("GET", "/jobs/" + "0" * 32 + "/events") as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        lines = [line async for line in r.aiter_lines()]

    events = [line for line in lines if line.startswith("event:")]
    assert events == ["event: error"]
    data = [line for line in lines if line.startswith("data:")]
    assert len(data) == 1
    assert json.loads(data[0][len("data:"):]) == {"error": "Job not found"}


@pytest.mark.asyncio
async def test_events_for_completed_job_send_final_status(client, completed_job, fresh_sse_state):
    job = completed_job([("a.pdf", b"%PDF-a")])
    async with client.stream("GET", f"/jobs/{job.id}/events") as r:
        lines = [line async for line in r.aiter_lines()]

    assert [line for line in lines if line.startswith("event:")] == ["event: status"]
    (data,) = [line for line in lines if line.startswith("data:")]
    assert json.loads(data[len("data:"):])["status"] == "completed"
