"""Background workers for the delivery lanes.

This module provides the queue-consuming side of the engine:
- QueueWorker: claims and runs jobs of one lane
- DeliveryExecutor: job handler that sends through channel transports
- WorkerRunner: per-lane threads, lease reclaim and delayed-job promotion

Workers can be started via:
- run_worker_once(): Single processing cycle
- run_worker_loop(): Continuous processing
"""

from app.workers.base import (
    WorkerBase,
    WorkerResult,
    WorkerStatus,
)
from app.workers.queue_worker import ClaimedJob, QueueWorker, default_worker_id
from app.workers.delivery_worker import DeliveryExecutor
from app.workers.runner import (
    MaintenanceResult,
    WorkerRunner,
    RunnerResult,
    run_worker_once,
    run_worker_loop,
    lane_stats,
    configure_worker_logging,
)

__all__ = [
    # Base classes
    "WorkerBase",
    "WorkerResult",
    "WorkerStatus",
    # Workers
    "ClaimedJob",
    "QueueWorker",
    "DeliveryExecutor",
    "default_worker_id",
    # Runner
    "WorkerRunner",
    "RunnerResult",
    "MaintenanceResult",
    "run_worker_once",
    "run_worker_loop",
    "lane_stats",
    "configure_worker_logging",
]
