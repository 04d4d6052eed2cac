"""
Asynchronous job pipeline for document transformations.
Provides the job store and queue broker gateways, the producer that creates
and dispatches jobs, the per-operation workers, and the read-side services
(status streaming and result assembly) so front-ends share one core.
"""

from .adapters import LocalJobStore, RedisQueueBroker
from .models import JobRecord, JobStatus, Operation, QueueMessage, SplitRange
from .results import ResultService
from .service import JobService
from .status import StatusStream
from .workers import ConvertWorker, MergeWorker, SplitWorker, build_worker
