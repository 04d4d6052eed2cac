"""Environment-driven settings shared by the API and the workers."""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("./data").resolve()
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "pdf"
    # Names the processing list, so it must be stable across restarts.
    # Give each instance its own WORKER_ID when a host runs several.
    worker_id: str = field(default_factory=socket.gethostname)
    redelivery_delay_sec: float = 5.0
    queue_block_timeout_sec: float = 5.0
    status_poll_interval: float = 2.0
    max_upload_mb: int = 50
    max_upload_files: int = 10
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "./data")).resolve(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            queue_prefix=os.getenv("QUEUE_PREFIX", "pdf"),
            worker_id=os.getenv("WORKER_ID") or socket.gethostname(),
            redelivery_delay_sec=float(os.getenv("REDELIVERY_DELAY_SEC", "5")),
            queue_block_timeout_sec=float(os.getenv("QUEUE_BLOCK_TIMEOUT_SEC", "5")),
            status_poll_interval=float(os.getenv("STATUS_POLL_INTERVAL", "2.0")),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "50")),
            max_upload_files=int(os.getenv("MAX_UPLOAD_FILES", "10")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def broker_options(self) -> dict[str, object]:
        return {
            "prefix": self.queue_prefix,
            "consumer_id": self.worker_id,
            "block_timeout": self.queue_block_timeout_sec,
            "redelivery_delay": self.redelivery_delay_sec,
        }
