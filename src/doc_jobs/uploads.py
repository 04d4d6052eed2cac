"""Persists multipart uploads to per-owner storage before a job is created."""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from fastapi import UploadFile

from .pipeline.errors import JobValidationError

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024
_OWNER_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


class UploadTooLargeError(ValueError):
    pass


@dataclass(frozen=True)
class StoredUpload:
    path: str
    original_name: str


class LocalUploadStore:
    def __init__(self, data_dir: str | Path, *, max_upload_mb: int = 50, max_files: int = 10) -> None:
        self._base = Path(data_dir).resolve() / "uploads"
        self._max_bytes = max_upload_mb * 1024 * 1024
        self._max_upload_mb = max_upload_mb
        self._max_files = max_files

    def owner_dir(self, owner_id: str) -> Path:
        if not _OWNER_RE.fullmatch(owner_id or ""):
            raise JobValidationError("owner_id may only contain letters, digits, '-' and '_'")
        return self._base / owner_id

    async def persist(self, owner_id: str, files: Sequence[UploadFile]) -> list[StoredUpload]:
        """Stream every upload to disk; on any failure nothing is left behind."""
        if len(files) > self._max_files:
            raise JobValidationError(f"at most {self._max_files} files per request")
        target_dir = self.owner_dir(owner_id)
        target_dir.mkdir(parents=True, exist_ok=True)

        stored: list[StoredUpload] = []
        try:
            for file in files:
                stored.append(await self._write_one(target_dir, file))
        except BaseException:
            self.discard(s.path for s in stored)
            raise
        return stored

    async def _write_one(self, target_dir: Path, file: UploadFile) -> StoredUpload:
        # Keep only the last path component of client-supplied names
        original_name = Path(file.filename or "upload").name or "upload"
        p = Path(original_name)
        input_path = target_dir / f"{p.stem}-{uuid.uuid4().hex}{p.suffix}"

        size_bytes = 0
        try:
            with input_path.open("wb") as f_out:
                while True:
                    chunk = await file.read(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > self._max_bytes:
                        raise UploadTooLargeError(f"{original_name} exceeds {self._max_upload_mb} MB")
                    f_out.write(chunk)
        except BaseException:
            input_path.unlink(missing_ok=True)
            raise
        logger.info("Stored upload %s (%d bytes) at %s", original_name, size_bytes, input_path)
        return StoredUpload(path=str(input_path), original_name=original_name)

    def discard(self, paths: Iterable[str]) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove upload %s: %s", path, e)
