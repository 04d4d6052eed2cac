from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol, Sequence

from .models import JobDraft, JobRecord, JobStatus, Operation, QueueMessage


class DocumentConverter(Protocol):
    def convert_to_html(self, input_path: str) -> str:
        """Render the given office/markup document as HTML synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """


class JobStore(Protocol):
    def job_dir(self, job_id: str) -> str:
        ...

    def output_dir(self, job_id: str) -> str:
        ...

    def create(self, draft: JobDraft) -> JobRecord:
        ...

    def get(self, job_id: str) -> JobRecord:
        ...

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        output_paths: Optional[Sequence[str]] = None,
        error_message: Optional[str] = None,
    ) -> JobRecord:
        ...


class Delivery(Protocol):
    message: QueueMessage

    async def ack(self) -> None:
        ...

    async def reject(self, requeue: bool = False) -> None:
        ...


Handler = Callable[[Delivery], Awaitable[None]]


class QueueBroker(Protocol):
    async def enqueue(self, operation: Operation, message: QueueMessage) -> None:
        ...

    async def consume(self, operation: Operation, handler: Handler, *, stop=None) -> None:
        ...

    async def close(self) -> None:
        ...
