"""Job data models."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Operation(str, enum.Enum):
    convert = "convert"
    merge = "merge"
    split = "split"


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.processing, JobStatus.failed}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
}


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SplitRange(_WireModel):
    """Inclusive, 1-based page bounds."""

    start: int
    end: int


@dataclass
class JobDraft:
    """Everything the producer needs to create a job."""

    owner_id: str
    operation: Operation
    input_paths: list[str]
    original_file_names: list[str]
    split_range: Optional[SplitRange] = None


class JobRecord(_WireModel):
    """Persistent representation of a transformation job."""

    id: str
    owner_id: str
    operation: Operation
    input_paths: list[str]
    original_file_names: list[str]
    split_range: Optional[SplitRange] = None
    status: JobStatus = JobStatus.pending
    output_paths: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "JobRecord":
        if not self.input_paths:
            raise ValueError("a job needs at least one input")
        if len(self.input_paths) != len(self.original_file_names):
            raise ValueError("input_paths and original_file_names differ in length")
        if bool(self.output_paths) != (self.status is JobStatus.completed):
            raise ValueError("output_paths must be non-empty exactly when the job is completed")
        if self.error_message is not None and self.status is not JobStatus.failed:
            raise ValueError("error_message is only allowed on failed jobs")
        if self.split_range is not None and self.operation is not Operation.split:
            raise ValueError("split_range is only allowed on split jobs")
        return self

    def to_storage(self) -> dict[str, object]:
        return self.model_dump(mode="json")

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class QueueMessage(_WireModel):
    """Snapshot of a job handed to a worker through the broker."""

    job_id: str
    owner_id: str
    operation: Operation
    input_paths: list[str]
    original_file_names: list[str]
    status: JobStatus
    split_range: Optional[SplitRange] = None

    @classmethod
    def from_job(cls, job: JobRecord) -> "QueueMessage":
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            operation=job.operation,
            input_paths=list(job.input_paths),
            original_file_names=list(job.original_file_names),
            status=job.status,
            split_range=job.split_range,
        )

    def encode(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def decode(cls, raw: str | bytes) -> "QueueMessage":
        return cls.model_validate_json(raw)
