import asyncio
import json
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import (
    BrokerError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
)
from .interfaces import Handler, JobStore, QueueBroker
from .models import JobDraft, JobRecord, JobStatus, Operation, QueueMessage, utcnow

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"[0-9a-f]{32}")


class LocalJobStore(JobStore):
    """One JSON document per job under ``<data_dir>/jobs/<id>/job.json``."""

    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()

    def job_dir(self, job_id: str) -> str:
        return str(self._base / "jobs" / job_id)

    def output_dir(self, job_id: str) -> str:
        return str(Path(self.job_dir(job_id)) / "output")

    def create(self, draft: JobDraft) -> JobRecord:
        job = JobRecord(
            id=uuid.uuid4().hex,
            owner_id=draft.owner_id,
            operation=draft.operation,
            input_paths=list(draft.input_paths),
            original_file_names=list(draft.original_file_names),
            split_range=draft.split_range,
        )
        self._write(job)
        logger.info("Created %s job %s for owner %s", job.operation.value, job.id, job.owner_id)
        return job

    def get(self, job_id: str) -> JobRecord:
        p = self._job_path(job_id)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise JobNotFoundError(f"Job '{job_id}' not found") from None
        except (OSError, ValueError) as e:
            raise PersistenceError(f"could not read job {job_id}: {e}") from e
        try:
            return JobRecord.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"job {job_id} is corrupt: {e}") from e

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        output_paths: Optional[Sequence[str]] = None,
        error_message: Optional[str] = None,
    ) -> JobRecord:
        job = self.get(job_id)
        if not job.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"job {job_id} cannot move from {job.status.value} to {status.value}"
            )
        data = job.to_storage()
        data["status"] = status.value
        data["output_paths"] = list(output_paths or [])
        data["error_message"] = error_message
        data["updated_at"] = utcnow()
        try:
            updated = JobRecord.model_validate(data)
        except ValidationError as e:
            raise InvalidTransitionError(f"invalid {status.value} update for job {job_id}: {e}") from e
        self._write(updated)
        logger.info("Job %s status updated to: %s", job_id, status.value)
        return updated

    def _job_path(self, job_id: str) -> Path:
        if not _JOB_ID_RE.fullmatch(job_id or ""):
            raise JobNotFoundError(f"Job '{job_id}' not found")
        return Path(self.job_dir(job_id)) / "job.json"

    def _write(self, job: JobRecord) -> None:
        p = self._job_path(job.id)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            # Readers must only ever see a complete document.
            fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=".job-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(job.to_storage(), f, ensure_ascii=False, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, p)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"could not write job {job.id}: {e}") from e


class RedisDelivery:
    """A message held in this consumer's processing list until settled."""

    def __init__(self, broker: "RedisQueueBroker", operation: Operation, raw: bytes, message: QueueMessage) -> None:
        self._broker = broker
        self._operation = operation
        self.raw = raw
        self.message = message
        self.settled = False

    async def ack(self) -> None:
        await self._broker._settle(self._operation, self.raw, requeue=False)
        self.settled = True

    async def reject(self, requeue: bool = False) -> None:
        await self._broker._settle(self._operation, self.raw, requeue=requeue)
        self.settled = True


class RedisQueueBroker(QueueBroker):
    """Durable per-operation queues on Redis lists with manual acknowledgment.

    Messages are pushed on the head of ``<prefix>_<operation>_queue`` and
    moved atomically from its tail into a processing list owned by this
    consumer. A message leaves the processing list only when it is acked or
    rejected; anything still there after a crash or a failed handler is moved
    back to the queue by :meth:`recover`. One message is in flight per
    consumer at any time.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        prefix: str = "pdf",
        consumer_id: str = "worker",
        block_timeout: float = 5.0,
        poll_interval: float = 0.5,
        redelivery_delay: float = 5.0,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._consumer_id = consumer_id
        self._block_timeout = block_timeout
        self._poll_interval = poll_interval
        self._redelivery_delay = redelivery_delay

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisQueueBroker":
        return cls(aioredis.Redis.from_url(url), **kwargs)

    async def close(self) -> None:
        await self._redis.aclose()

    def queue_name(self, operation: Operation) -> str:
        return f"{self._prefix}_{operation.value}_queue"

    def processing_name(self, operation: Operation) -> str:
        return f"{self.queue_name(operation)}:processing:{self._consumer_id}"

    async def enqueue(self, operation: Operation, message: QueueMessage) -> None:
        try:
            await self._redis.lpush(self.queue_name(operation), message.encode())
        except (RedisError, OSError) as e:
            raise BrokerError(f"could not enqueue job {message.job_id}: {e}") from e
        logger.info("Job %s sent to %s", message.job_id, self.queue_name(operation))

    async def receive(self, operation: Operation) -> Optional[RedisDelivery]:
        """Move one message into the processing list, or return None when idle."""
        queue = self.queue_name(operation)
        processing = self.processing_name(operation)
        try:
            if self._block_timeout > 0:
                raw = await self._redis.blmove(queue, processing, self._block_timeout, "RIGHT", "LEFT")
            else:
                raw = await self._redis.lmove(queue, processing, "RIGHT", "LEFT")
        except (RedisError, OSError) as e:
            raise BrokerError(f"could not receive from {queue}: {e}") from e
        if raw is None:
            return None
        try:
            message = QueueMessage.decode(raw)
        except ValidationError as e:
            logger.error("Dropping undecodable message on %s: %s", queue, e)
            await self._settle(operation, raw, requeue=False)
            return None
        return RedisDelivery(self, operation, raw, message)

    async def recover(self, operation: Operation) -> int:
        """Requeue everything this consumer left unacknowledged."""
        queue = self.queue_name(operation)
        processing = self.processing_name(operation)
        moved = 0
        try:
            while await self._redis.lmove(processing, queue, "RIGHT", "RIGHT") is not None:
                moved += 1
        except (RedisError, OSError) as e:
            raise BrokerError(f"could not recover {processing}: {e}") from e
        if moved:
            logger.warning("Requeued %d unacknowledged message(s) on %s", moved, queue)
        return moved

    async def consume(self, operation: Operation, handler: Handler, *, stop: Optional[asyncio.Event] = None) -> None:
        await self.recover(operation)
        logger.info("Consumer %s listening on %s", self._consumer_id, self.queue_name(operation))
        while stop is None or not stop.is_set():
            delivery = await self.receive(operation)
            if delivery is None:
                if self._block_timeout <= 0:
                    await asyncio.sleep(self._poll_interval)
                continue
            try:
                await handler(delivery)
            except Exception:
                logger.exception(
                    "Handler failed for job %s on %s; message left unacknowledged",
                    delivery.message.job_id,
                    self.queue_name(operation),
                )
                await asyncio.sleep(self._redelivery_delay)
                await self.recover(operation)
                continue
            if not delivery.settled:
                logger.warning("Handler returned without settling job %s; redelivering", delivery.message.job_id)
                await self.recover(operation)

    async def _settle(self, operation: Operation, raw: bytes, *, requeue: bool) -> None:
        try:
            await self._redis.lrem(self.processing_name(operation), 1, raw)
            if requeue:
                await self._redis.rpush(self.queue_name(operation), raw)
        except (RedisError, OSError) as e:
            raise BrokerError(f"could not settle message on {self.queue_name(operation)}: {e}") from e
