import logging
from typing import Optional

from .errors import BrokerError, DispatchError, JobNotFoundError, JobValidationError, PersistenceError
from .interfaces import JobStore, QueueBroker
from .models import JobDraft, JobRecord, JobStatus, Operation, QueueMessage, SplitRange

logger = logging.getLogger(__name__)

QUEUE_FAILURE_MESSAGE = "Failed to queue job for processing"


def validate_request(
    owner_id: Optional[str],
    operation: Operation | str,
    input_count: int,
    split_range: Optional[SplitRange] = None,
) -> Operation:
    """Check a job request before anything is persisted; returns the parsed operation."""
    if not owner_id or not str(owner_id).strip():
        raise JobValidationError("owner_id is required")
    try:
        op = Operation(operation)
    except ValueError:
        raise JobValidationError(f"unknown operation: {operation}") from None
    if input_count < 1:
        raise JobValidationError("no files uploaded")
    if op is Operation.split:
        if input_count != 1:
            raise JobValidationError("split takes exactly one input file")
        if split_range is None:
            raise JobValidationError("split requires a page range")
        if split_range.start < 1 or split_range.end < 1:
            raise JobValidationError("split page bounds must be positive")
    elif split_range is not None:
        raise JobValidationError(f"a page range is only accepted for split, not {op.value}")
    return op


class JobService:
    """Creates jobs and hands them to the operation queues.

    The service never leaves a job ``pending`` without a queued message: if
    the broker rejects the message the job is forced to ``failed`` before the
    error is reported.
    """

    def __init__(self, store: JobStore, broker: QueueBroker) -> None:
        self._store = store
        self._broker = broker

    async def submit(self, draft: JobDraft) -> JobRecord:
        draft.operation = validate_request(
            draft.owner_id, draft.operation, len(draft.input_paths), draft.split_range
        )
        if len(draft.original_file_names) != len(draft.input_paths):
            raise JobValidationError("every input needs an original file name")

        try:
            job = self._store.create(draft)
        except PersistenceError as e:
            logger.error("Could not record %s job for %s: %s", draft.operation.value, draft.owner_id, e)
            raise DispatchError("Failed to record job") from e

        try:
            await self._broker.enqueue(job.operation, QueueMessage.from_job(job))
        except BrokerError as e:
            logger.error("Queue error for job %s: %s", job.id, e)
            try:
                job = self._store.update_status(job.id, JobStatus.failed, error_message=QUEUE_FAILURE_MESSAGE)
            except (PersistenceError, JobNotFoundError):
                logger.exception("Could not mark job %s as failed after queue error", job.id)
            raise DispatchError(QUEUE_FAILURE_MESSAGE, job_id=job.id) from e

        logger.info("Job %s sent to %s queue successfully", job.id, job.operation.value)
        return job

    def get(self, job_id: str) -> JobRecord:
        return self._store.get(job_id)
