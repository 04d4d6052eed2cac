"""Shared test fixtures for the doc_jobs test suite."""
from __future__ import annotations

from collections import defaultdict
from pathlib import Path

import fitz  # PyMuPDF
import pytest

from doc_jobs.pipeline.adapters import LocalJobStore
from doc_jobs.pipeline.errors import BrokerError
from doc_jobs.pipeline.models import JobDraft, JobStatus, Operation, QueueMessage, SplitRange


class MemoryDelivery:
    def __init__(self, message: QueueMessage) -> None:
        self.message = message
        self.acked = False
        self.rejected = False
        self.requeued = False

    async def ack(self) -> None:
        self.acked = True

    async def reject(self, requeue: bool = False) -> None:
        self.rejected = True
        self.requeued = requeue


class InMemoryBroker:
    """Broker double: drains whatever is queued, then returns."""

    def __init__(self) -> None:
        self.queues: dict[Operation, list[str]] = defaultdict(list)
        self.deliveries: list[MemoryDelivery] = []
        self.down = False
        self.closed = False

    async def enqueue(self, operation: Operation, message: QueueMessage) -> None:
        if self.down:
            raise BrokerError("broker unreachable")
        self.queues[operation].append(message.encode())

    async def consume(self, operation: Operation, handler, *, stop=None) -> None:
        while self.queues[operation] and not (stop is not None and stop.is_set()):
            delivery = MemoryDelivery(QueueMessage.decode(self.queues[operation].pop(0)))
            self.deliveries.append(delivery)
            await handler(delivery)

    async def close(self) -> None:
        self.closed = True


class RecordingStore(LocalJobStore):
    """Job store that remembers every status it was asked to commit."""

    def __init__(self, data_dir: str) -> None:
        super().__init__(data_dir)
        self.history: list[tuple[str, JobStatus]] = []

    def update_status(self, job_id, status, *, output_paths=None, error_message=None):
        job = super().update_status(job_id, status, output_paths=output_paths, error_message=error_message)
        self.history.append((job_id, status))
        return job


def make_pdf(path: Path, pages: int, label: str = "page") -> Path:
    with fitz.open() as doc:
        for i in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"{label} {i + 1}")
        doc.save(str(path))
    return path


def page_texts(path: str | Path) -> list[str]:
    with fitz.open(str(path)) as doc:
        return [page.get_text().strip() for page in doc]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def store(data_dir):
    return RecordingStore(str(data_dir))


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def inputs_dir(tmp_path):
    d = tmp_path / "inputs"
    d.mkdir()
    return d


@pytest.fixture
def new_job(store):
    """Create a pending job directly in the store."""

    def _create(operation: Operation, paths: list[Path], split_range: SplitRange | None = None):
        draft = JobDraft(
            owner_id="user-1",
            operation=operation,
            input_paths=[str(p) for p in paths],
            original_file_names=[p.name for p in paths],
            split_range=split_range,
        )
        job = store.create(draft)
        return job, MemoryDelivery(QueueMessage.from_job(job))

    return _create


@pytest.fixture
def completed_job(store, tmp_path):
    """A completed job whose outputs are the given (name, bytes) pairs."""

    def _create(files: list[tuple[str, bytes]], operation: Operation = Operation.convert):
        out = tmp_path / "outputs"
        out.mkdir(exist_ok=True)
        paths = []
        for name, content in files:
            p = out / name
            p.write_bytes(content)
            paths.append(str(p))
        job = store.create(
            JobDraft(
                owner_id="user-1",
                operation=operation,
                input_paths=paths,
                original_file_names=[Path(p).name for p in paths],
            )
        )
        store.update_status(job.id, JobStatus.processing)
        return store.update_status(job.id, JobStatus.completed, output_paths=paths)

    return _create


@pytest.fixture
def app(data_dir, store, broker):
    from doc_jobs.config import Settings
    from doc_jobs.webapi import create_app

    settings = Settings(data_dir=data_dir, status_poll_interval=0.01)
    return create_app(settings, store=store, broker=broker)


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
