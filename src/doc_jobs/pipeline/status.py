"""Server-sent status mirror for a single job."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from .errors import JobNotFoundError
from .interfaces import JobStore

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


class StatusStream:
    """Polls the job store and yields SSE-ready events until the job is terminal.

    Read-only: intermediate states may be skipped between two polls.
    """

    def __init__(self, store: JobStore, *, interval: float = 2.0) -> None:
        self._store = store
        self._interval = interval

    async def events(
        self, job_id: str, is_disconnected: Optional[DisconnectProbe] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        logger.debug("Status subscription opened for job %s", job_id)
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    logger.debug("Client went away from job %s", job_id)
                    return
                try:
                    job = self._store.get(job_id)
                except JobNotFoundError:
                    yield {"event": "error", "data": json.dumps({"error": "Job not found"})}
                    return
                yield {
                    "event": "status",
                    "data": json.dumps({"status": job.status.value, "outputPaths": job.output_paths}),
                }
                if job.status.is_terminal:
                    return
                await asyncio.sleep(self._interval)
        finally:
            logger.debug("Status subscription closed for job %s", job_id)
