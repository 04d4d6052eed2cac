"""Operation workers: one per queue, one message at a time.

Each worker follows the same skeleton (see :meth:`OperationWorker.handle`)
and differs only in :meth:`OperationWorker.execute`, the transform step.
A job fails as a whole when any of its inputs fails; outputs that were
already written for sibling inputs are removed in that case.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

from . import transforms
from .errors import JobNotFoundError, TransformError
from .interfaces import Delivery, DocumentConverter, JobStore
from .models import JobStatus, Operation, QueueMessage

logger = logging.getLogger(__name__)


@dataclass
class TransformOutcome:
    outputs: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.outputs) and not self.failures

    def error_message(self, input_count: int) -> str:
        if not self.failures:
            return "operation produced no output"
        return f"{len(self.failures)} of {input_count} input(s) failed: " + "; ".join(self.failures)


class OperationWorker:
    operation: Operation

    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def handle(self, delivery: Delivery) -> None:
        message = delivery.message
        job_id = message.job_id
        logger.info("Job received: %s (%s, %d input(s))", job_id, message.operation.value, len(message.input_paths))

        try:
            job = self._store.get(job_id)
        except JobNotFoundError:
            logger.error("Job %s does not exist; discarding its message", job_id)
            await delivery.reject(requeue=False)
            return

        if job.status.is_terminal:
            # Redelivered after the result was committed but before the ack.
            logger.info("Job %s is already %s; acknowledging redelivery", job_id, job.status.value)
            await delivery.ack()
            return
        if job.status is JobStatus.pending:
            self._store.update_status(job_id, JobStatus.processing)
        else:
            logger.warning("Job %s was already processing; re-running after redelivery", job_id)

        output_dir = Path(self._store.output_dir(job_id))
        outcome = await asyncio.to_thread(self._run, message, output_dir)

        if outcome.succeeded:
            self._store.update_status(job_id, JobStatus.completed, output_paths=outcome.outputs)
            logger.info("Job %s completed with %d output(s)", job_id, len(outcome.outputs))
        else:
            _discard(outcome.outputs)
            error = outcome.error_message(len(message.input_paths))
            self._store.update_status(job_id, JobStatus.failed, error_message=error)
            logger.warning("Job %s failed: %s", job_id, error)
        await delivery.ack()

    def _run(self, message: QueueMessage, output_dir: Path) -> TransformOutcome:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            return self.execute(message, output_dir)
        except Exception as e:
            logger.exception("Transform crashed for job %s", message.job_id)
            return TransformOutcome(failures=[str(e) or type(e).__name__])

    def execute(self, message: QueueMessage, output_dir: Path) -> TransformOutcome:
        raise NotImplementedError


class ConvertWorker(OperationWorker):
    """Converts each input to PDF according to its file type."""

    operation = Operation.convert

    def __init__(self, store: JobStore, converter: Optional[DocumentConverter] = None) -> None:
        super().__init__(store)
        self._converter = converter

    def execute(self, message: QueueMessage, output_dir: Path) -> TransformOutcome:
        outcome = TransformOutcome()
        names = output_names(message.original_file_names)
        for input_path, display, out_name in zip(message.input_paths, message.original_file_names, names):
            output_path = output_dir / out_name
            logger.info("Converting: %s -> %s", input_path, output_path)
            try:
                kind = transforms.classify(input_path)
                transforms.CONVERTERS[kind](input_path, output_path, self._converter)
            except Exception as e:
                logger.warning("Conversion failed for %s: %s", display, e)
                outcome.failures.append(f"{display}: {e}")
                continue
            outcome.outputs.append(str(output_path))
        return outcome


class MergeWorker(OperationWorker):
    """Concatenates every input, in order, into a single PDF."""

    operation = Operation.merge
    output_name = "merged.pdf"

    def execute(self, message: QueueMessage, output_dir: Path) -> TransformOutcome:
        outcome = TransformOutcome()
        with fitz.open() as merged:
            for input_path, display in zip(message.input_paths, message.original_file_names):
                try:
                    with transforms.open_pdf(input_path) as src:
                        merged.insert_pdf(src)
                except Exception as e:
                    logger.warning("Could not merge %s: %s", display, e)
                    outcome.failures.append(f"{display}: {e}")
            if outcome.failures:
                return outcome
            output_path = output_dir / self.output_name
            merged.save(str(output_path), garbage=3, deflate=True)
            logger.info("Merged PDF created: %s (%d pages)", output_path, merged.page_count)
        outcome.outputs.append(str(output_path))
        return outcome


class SplitWorker(OperationWorker):
    """Extracts an inclusive page range from the single input."""

    operation = Operation.split

    def execute(self, message: QueueMessage, output_dir: Path) -> TransformOutcome:
        outcome = TransformOutcome()
        input_path = message.input_paths[0]
        display = message.original_file_names[0]
        try:
            if message.split_range is None:
                raise TransformError("no page range given")
            total = transforms.count_pages(input_path)
            page_range = transforms.clamp_range(message.split_range, total)
            output_path = output_dir / f"{Path(display).stem}_pages_{page_range.start}-{page_range.end}.pdf"
            pages = transforms.extract_pages(input_path, output_path, page_range)
        except Exception as e:
            logger.warning("Split failed for %s: %s", display, e)
            outcome.failures.append(f"{display}: {e}")
            return outcome
        logger.info("Pages %d-%d extracted (%d pages): %s", page_range.start, page_range.end, pages, output_path)
        outcome.outputs.append(str(output_path))
        return outcome


def output_names(original_file_names: list[str]) -> list[str]:
    """Deterministic, pairwise distinct ``<stem>.pdf`` names.

    Stems shared by several inputs get the input index appended; a name that
    still collides with an earlier one gets a further counter.
    """
    stems = [Path(name).stem or "document" for name in original_file_names]
    names = []
    used = set()
    for index, stem in enumerate(stems):
        base = f"{stem}-{index}" if stems.count(stem) > 1 else stem
        candidate = f"{base}.pdf"
        n = 1
        while candidate.lower() in used:
            candidate = f"{base}-{n}.pdf"
            n += 1
        used.add(candidate.lower())
        names.append(candidate)
    return names


def build_worker(operation: Operation, store: JobStore, converter: Optional[DocumentConverter] = None) -> OperationWorker:
    if operation is Operation.convert:
        return ConvertWorker(store, converter if converter is not None else transforms.DoclingConverter())
    if operation is Operation.merge:
        return MergeWorker(store)
    return SplitWorker(store)


def _discard(paths: list[str]) -> None:
    for p in paths:
        try:
            Path(p).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial output %s: %s", p, e)
