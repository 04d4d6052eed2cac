import logging
import os
from typing import Optional

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from sse_starlette.sse import EventSourceResponse

from doc_jobs import __version__
from doc_jobs.config import Settings
from doc_jobs.pipeline import JobService, LocalJobStore, RedisQueueBroker, ResultService, StatusStream
from doc_jobs.pipeline.errors import (
    DispatchError,
    FileIndexError,
    JobNotFoundError,
    JobValidationError,
    MissingFileError,
    NoContentError,
    ResolutionError,
    ResultNotReadyError,
)
from doc_jobs.pipeline.interfaces import JobStore, QueueBroker
from doc_jobs.pipeline.models import JobDraft, Operation, SplitRange
from doc_jobs.pipeline.results import FileResult
from doc_jobs.pipeline.service import validate_request
from doc_jobs.uploads import LocalUploadStore, UploadTooLargeError

logger = logging.getLogger(__name__)

router = APIRouter()

_RESOLUTION_STATUS: dict[type, tuple[int, str]] = {
    ResultNotReadyError: (409, "not_ready"),
    NoContentError: (404, "no_content"),
    FileIndexError: (404, "file_not_found"),
    MissingFileError: (404, "missing_file"),
}


def _error(status_code: int, code: str, message: str, **extra: object) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, **extra})


def _not_found(job_id: str) -> HTTPException:
    return _error(404, "not_found", f"job {job_id} not found")


@router.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@router.post("/jobs/{operation}", status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    operation: str,
    request: Request,
    files: Optional[list[UploadFile]] = File(None),
    owner_id: Optional[str] = Form(None),
    split_start: Optional[int] = Form(None),
    split_end: Optional[int] = Form(None),
) -> JSONResponse:
    """Create a convert, merge or split job from uploaded documents.

    Accepts multipart/form-data with one or more parts named "files", an
    "owner_id" field and, for split, "split_start"/"split_end" (1-based,
    inclusive). Returns 202 Accepted with the job id; progress is available
    from the events endpoint.
    """
    if operation not in Operation.__members__:
        raise _error(404, "not_found", f"unknown operation {operation}")
    files = files or []
    split_range = None
    if split_start is not None and split_end is not None:
        split_range = SplitRange(start=split_start, end=split_end)
    try:
        op = validate_request(owner_id, operation, len(files), split_range)
    except JobValidationError as e:
        raise _error(400, "invalid_request", str(e))

    uploads: LocalUploadStore = request.app.state.uploads
    try:
        stored = await uploads.persist(owner_id, files)
    except UploadTooLargeError as e:
        raise _error(413, "payload_too_large", str(e))
    except JobValidationError as e:
        raise _error(400, "invalid_request", str(e))

    draft = JobDraft(
        owner_id=owner_id,
        operation=op,
        input_paths=[s.path for s in stored],
        original_file_names=[s.original_name for s in stored],
        split_range=split_range,
    )
    service: JobService = request.app.state.jobs
    try:
        job = await service.submit(draft)
    except JobValidationError as e:
        uploads.discard(draft.input_paths)
        raise _error(400, "invalid_request", str(e))
    except DispatchError as e:
        uploads.discard(draft.input_paths)
        raise _error(500, "dispatch_failed", str(e), job_id=e.job_id)

    body = {
        "id": job.id,
        "operation": job.operation.value,
        "status": job.status.value,
        "links": {
            "self": f"/jobs/{job.id}",
            "events": f"/jobs/{job.id}/events",
            "result": f"/jobs/{job.id}/result",
        },
    }
    headers = {"Location": f"/jobs/{job.id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=headers)


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> JSONResponse:
    service: JobService = request.app.state.jobs
    try:
        job = service.get(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return JSONResponse(content=job.to_wire())


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request) -> EventSourceResponse:
    stream: StatusStream = request.app.state.status
    return EventSourceResponse(stream.events(job_id, request.is_disconnected))


@router.get("/jobs/{job_id}/result")
async def get_result(job_id: str, request: Request):
    return _download(request, job_id, None)


@router.get("/jobs/{job_id}/result/{file_index}")
async def get_result_file(job_id: str, file_index: int, request: Request):
    return _download(request, job_id, file_index)


def _download(request: Request, job_id: str, file_index: Optional[int]):
    results: ResultService = request.app.state.results
    try:
        resolved = results.resolve(job_id, file_index)
    except JobNotFoundError:
        raise _not_found(job_id)
    except ResolutionError as e:
        status_code, code = _RESOLUTION_STATUS[type(e)]
        raise _error(status_code, code, str(e))

    if isinstance(resolved, FileResult):
        return FileResponse(
            resolved.path,
            media_type=resolved.media_type,
            headers={"Content-Disposition": _attachment(resolved.filename)},
        )
    return StreamingResponse(
        resolved.iter_bytes(),
        media_type="application/zip",
        headers={"Content-Disposition": _attachment(resolved.filename)},
    )


def _attachment(filename: str) -> str:
    return 'attachment; filename="{}"'.format(filename.replace('"', "_"))


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[JobStore] = None,
    broker: Optional[QueueBroker] = None,
    uploads: Optional[LocalUploadStore] = None,
) -> FastAPI:
    """Build the API with explicitly owned store, broker and upload collaborators."""
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="Document Job Service",
        version=os.getenv("DOC_JOBS_VERSION", __version__),
        description=(
            "Asynchronous convert, merge and split jobs for documents, with "
            "live status streaming and result downloads."
        ),
    )

    store = store or LocalJobStore(str(settings.data_dir))
    owns_broker = broker is None
    if broker is None:
        broker = RedisQueueBroker.from_url(settings.redis_url, **settings.broker_options())

    app.state.settings = settings
    app.state.jobs = JobService(store, broker)
    app.state.results = ResultService(store)
    app.state.status = StatusStream(store, interval=settings.status_poll_interval)
    app.state.uploads = uploads or LocalUploadStore(
        settings.data_dir, max_upload_mb=settings.max_upload_mb, max_files=settings.max_upload_files
    )
    app.include_router(router)

    @app.on_event("startup")
    async def _startup() -> None:
        # Ensure base directories
        for sub in ("jobs", "uploads"):
            (settings.data_dir / sub).mkdir(parents=True, exist_ok=True)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if owns_broker:
            await broker.close()

    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("doc_jobs.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
