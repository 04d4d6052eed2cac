"""Resolution of completed jobs into downloadable content."""
from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import FileIndexError, MissingFileError, NoContentError, ResultNotReadyError
from .interfaces import JobStore
from .models import JobRecord, JobStatus

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

MIME_TYPES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".txt": "text/plain",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".zip": "application/zip",
}
DEFAULT_MIME = "application/octet-stream"


def media_type_for(path: str | Path) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), DEFAULT_MIME)


@dataclass(frozen=True)
class FileResult:
    path: Path
    filename: str
    media_type: str
    size: int


@dataclass(frozen=True)
class ArchiveResult:
    filename: str
    entries: tuple[Path, ...]

    def iter_bytes(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        return iter_zip(self.entries, chunk_size=chunk_size)


Resolved = Union[FileResult, ArchiveResult]


class ResultService:
    def __init__(self, store: JobStore) -> None:
        self._store = store

    def resolve(self, job_id: str, file_index: Optional[int] = None) -> Resolved:
        job = self._store.get(job_id)
        if job.status is not JobStatus.completed:
            raise ResultNotReadyError(f"Job '{job_id}' is {job.status.value}, not completed")
        if not job.output_paths:
            raise NoContentError(f"Job '{job_id}' has no output files")

        if file_index is not None:
            return self._single(job, file_index)
        if len(job.output_paths) == 1:
            return self._single(job, 0)
        return self._archive(job)

    def _single(self, job: JobRecord, index: int) -> FileResult:
        if not 0 <= index < len(job.output_paths):
            raise FileIndexError(f"Job '{job.id}' has no output #{index}")
        path = Path(job.output_paths[index])
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            logger.error("Output file not found on disk: %s", path)
            raise MissingFileError(f"Output #{index} of job '{job.id}' is no longer available") from None
        return FileResult(path=path, filename=path.name, media_type=media_type_for(path), size=size)

    def _archive(self, job: JobRecord) -> ArchiveResult:
        present = []
        for raw in job.output_paths:
            path = Path(raw)
            if path.is_file():
                present.append(path)
            else:
                logger.warning("File not found, skipping: %s", path)
        if not present:
            raise NoContentError(f"No files available for download for job '{job.id}'")
        return ArchiveResult(filename=f"{job.operation.value}_{job.id}.zip", entries=tuple(present))


class _ChunkSink(io.RawIOBase):
    """Write-only, non-seekable buffer drained by the archive generator."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._buffer.extend(data)
        return len(data)

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def iter_zip(paths: tuple[Path, ...] | list[Path], chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a deflate zip of ``paths`` (stored under their base names) as it is built."""
    sink = _ChunkSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in paths:
            try:
                info = zipfile.ZipInfo.from_file(path, arcname=path.name)
                src = path.open("rb")
            except FileNotFoundError:
                logger.warning("File vanished before archiving, skipping: %s", path)
                continue
            info.compress_type = zipfile.ZIP_DEFLATED
            with src, archive.open(info, mode="w") as dest:
                while True:
                    chunk = src.read(chunk_size)
                    if not chunk:
                        break
                    dest.write(chunk)
                    data = sink.take()
                    if data:
                        yield data
            data = sink.take()
            if data:
                yield data
    data = sink.take()
    if data:
        yield data
