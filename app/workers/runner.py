"""Worker runner for the delivery lanes.

Provides easy-to-use entry points for running workers:
- run_worker_once(): One maintenance pass and one cycle per lane
- run_worker_loop(): Per-lane worker threads plus periodic maintenance

Every worker thread opens its own session; coordination between threads
and processes happens only through the job store.
"""

import logging
import signal
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlmodel import Session

from app.config import Settings, get_settings
from app.events.consumers import EventBus
from app.events.types import QueueEvent, QueueEventType
from app.models.delivery_attempt import AttemptOutcome
from app.models.job import JobCounts, Lane
from app.services.queue import QueueService
from app.services.tracker import DeliveryTracker
from app.transports import build_transports
from app.transports.base import Transport
from app.workers.base import WorkerResult
from app.workers.delivery_worker import DeliveryExecutor
from app.workers.queue_worker import ClaimedJob, JobHandler, QueueWorker

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "Lease expired before completion"


@dataclass
class MaintenanceResult:
    """Result of one maintenance pass."""

    promoted: int = 0
    reclaimed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"promoted": self.promoted, "reclaimed": self.reclaimed, "failed": self.failed}


@dataclass
class RunnerResult:
    """Result of a complete runner cycle.

    Attributes:
        started_at: When the run started
        completed_at: When the run completed
        lanes_run: Number of lanes processed
        total_processed: Total jobs completed across all lanes
        total_failed: Total failed attempts across all lanes
        maintenance: Delayed/expired job housekeeping of this cycle
        lane_results: Individual results per lane
        errors: Top-level errors during run
    """

    started_at: datetime
    completed_at: datetime | None = None
    lanes_run: int = 0
    total_processed: int = 0
    total_failed: int = 0
    maintenance: MaintenanceResult = field(default_factory=MaintenanceResult)
    lane_results: dict[str, WorkerResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": (
                (self.completed_at - self.started_at).total_seconds() * 1000
                if self.completed_at
                else None
            ),
            "lanes_run": self.lanes_run,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "maintenance": self.maintenance.to_dict(),
            "lane_results": {
                lane: result.to_dict()
                for lane, result in self.lane_results.items()
            },
            "errors": self.errors,
        }


def _default_session_factory() -> Session:
    from app.db.session import session_factory

    return session_factory()


class WorkerRunner:
    """Orchestrates queue workers for every lane.

    Usage:
        runner = WorkerRunner()
        result = runner.run_once()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        transports: Mapping[str, Transport] | None = None,
        settings: Settings | None = None,
        bus: EventBus | None = None,
        handler: JobHandler | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize the worker runner.

        Args:
            session_factory: Opens a new session (one per worker thread)
            transports: Channel transports (built from settings if omitted)
            settings: Application settings
            bus: Event bus (built-in subscribers if omitted)
            handler: Job handler (DeliveryExecutor over transports if omitted)
            batch_size: Override default batch size
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or _default_session_factory
        if transports is None:
            transports = build_transports(self.session_factory, self.settings)
        self.transports = transports
        self.bus = bus or EventBus.with_defaults()
        self.handler = handler or DeliveryExecutor(self.transports, self.session_factory)
        self.batch_size = batch_size or self.settings.WORKER_BATCH_SIZE
        self.poll_interval = float(self.settings.WORKER_POLL_INTERVAL_SECONDS)

        self._logger = logging.getLogger(self.__class__.__name__)
        self._shutdown = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def _worker(self, lane: str, handler: JobHandler | None = None) -> QueueWorker:
        return QueueWorker(
            lane,
            handler or self.handler,
            bus=self.bus,
            settings=self.settings,
            batch_size=self.batch_size,
            stop_event=self._shutdown,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def run_maintenance(self, now: datetime | None = None) -> MaintenanceResult:
        """Promote due delayed jobs and reclaim expired leases.

        Every reclaimed job gets a failure attempt record and a
        ``job.stalled`` event; a job whose budget ran out also gets
        ``job.failed``.
        """
        result = MaintenanceResult()
        with self.session_factory() as session:
            queue = QueueService(session, self.settings)
            result.promoted = queue.promote_delayed(now)

            tracker = DeliveryTracker(session)
            for reclaimed in queue.reclaim_expired(now):
                result.reclaimed += 1
                job = ClaimedJob(
                    id=reclaimed.job_id,
                    lane=reclaimed.lane,
                    attempts=reclaimed.attempts,
                    max_attempts=reclaimed.max_attempts,
                    timeout_ms=reclaimed.timeout_ms,
                    worker_id=reclaimed.previous_owner or "",
                    payload=reclaimed.payload,
                )
                tracker.record(
                    job_id=job.id,
                    channel=job.channel,
                    attempt_number=job.attempts,
                    outcome=AttemptOutcome.FAILURE,
                    error_detail=LEASE_EXPIRED_ERROR,
                    event=job.event,
                    registration_id=job.registration_id,
                    notification_id=job.notification_id,
                )

                event_types = [QueueEventType.JOB_STALLED]
                if reclaimed.terminal:
                    result.failed += 1
                    event_types.append(QueueEventType.JOB_FAILED)
                for event_type in event_types:
                    self.bus.publish(
                        session,
                        QueueEvent(
                            event_type=event_type,
                            job_id=job.id,
                            lane=job.lane,
                            channel=job.channel,
                            attempt=job.attempts,
                            error=LEASE_EXPIRED_ERROR,
                            delivery_event=job.event,
                            notification_id=job.notification_id,
                            registration_id=job.registration_id,
                        ),
                    )

        if result.promoted or result.reclaimed:
            self._logger.info("Maintenance pass complete", extra=result.to_dict())
        return result

    # -------------------------------------------------------------------------
    # Single pass
    # -------------------------------------------------------------------------

    def select_lanes(self, session: Session, names: Sequence[str] | None = None) -> list[Lane]:
        """Registered lanes, or just ``names`` in the given order.

        Raises:
            InvalidLane: a requested lane is not registered
        """
        queue = QueueService(session, self.settings)
        if not names:
            return queue.list_lanes()
        return [queue.get_lane(name) for name in dict.fromkeys(names)]

    def run_once(
        self,
        now: datetime | None = None,
        lanes: Sequence[str] | None = None,
    ) -> RunnerResult:
        """Execute one maintenance pass and one worker cycle per lane.

        Args:
            now: Clock for maintenance (defaults to utcnow)
            lanes: Only run these lanes (default: every registered lane)

        Returns:
            RunnerResult with aggregated statistics
        """
        result = RunnerResult(started_at=datetime.utcnow())

        try:
            result.maintenance = self.run_maintenance(now)
        except Exception as e:
            error_msg = f"maintenance failed: {str(e)}"
            result.errors.append(error_msg)
            self._logger.error(error_msg, exc_info=True)

        with self.session_factory() as session:
            lane_names = [lane.name for lane in self.select_lanes(session, lanes)]

            for lane in lane_names:
                worker = self._worker(lane)
                try:
                    lane_result = worker.run(session)
                    result.lane_results[lane] = lane_result
                    result.lanes_run += 1
                    result.total_processed += lane_result.processed_count
                    result.total_failed += lane_result.failed_count

                except Exception as e:
                    error_msg = f"{worker.worker_name} failed: {str(e)}"
                    result.errors.append(error_msg)
                    self._logger.error(
                        error_msg,
                        extra={"lane": lane},
                        exc_info=True,
                    )
                finally:
                    worker.close()

        result.completed_at = datetime.utcnow()

        self._logger.info(
            "Worker run completed",
            extra=result.to_dict(),
        )

        return result

    # -------------------------------------------------------------------------
    # Continuous processing
    # -------------------------------------------------------------------------

    def process(
        self,
        lane: str,
        concurrency: int | None = None,
        handler: JobHandler | None = None,
    ) -> list[threading.Thread]:
        """Start ``concurrency`` worker threads on a lane.

        Threads keep claiming until request_shutdown(); the lane's own
        concurrency is used when none is given.

        Raises:
            InvalidLane: lane is not registered
        """
        with self.session_factory() as session:
            configured = QueueService(session, self.settings).get_lane(lane).concurrency
        concurrency = concurrency or configured

        threads = []
        for index in range(concurrency):
            thread = threading.Thread(
                target=self._lane_loop,
                args=(lane, handler),
                name=f"worker-{lane}-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        self._threads.extend(threads)
        self._logger.info(
            "Lane workers started",
            extra={"lane": lane, "concurrency": concurrency},
        )
        return threads

    def _lane_loop(self, lane: str, handler: JobHandler | None) -> None:
        worker = self._worker(lane, handler)
        try:
            while not self._shutdown.is_set():
                try:
                    with self.session_factory() as session:
                        result = worker.run(session)
                except Exception as e:
                    self._logger.error(
                        f"[{worker.worker_name}] Cycle crashed",
                        extra={"lane": lane, "error": str(e)},
                        exc_info=True,
                    )
                    self._shutdown.wait(self.poll_interval)
                    continue

                if result.processed_count == 0 and result.failed_count == 0:
                    self._shutdown.wait(self.poll_interval)
        finally:
            worker.close()

    def run_loop(
        self,
        interval_seconds: float | None = None,
        max_iterations: int | None = None,
        lanes: Sequence[str] | None = None,
    ) -> None:
        """Run lanes continuously until shutdown.

        Args:
            interval_seconds: Seconds between maintenance passes and idle polls
            max_iterations: Max maintenance passes (None for infinite)
            lanes: Only start workers for these lanes (default: all)
        """
        if interval_seconds is not None:
            self.poll_interval = float(interval_seconds)
        iterations = 0

        with self.session_factory() as session:
            lane_config = {
                lane.name: lane.concurrency for lane in self.select_lanes(session, lanes)
            }

        self._setup_signal_handlers()

        self._logger.info(
            "Starting worker loop",
            extra={
                "interval_seconds": self.poll_interval,
                "max_iterations": max_iterations,
                "lanes": lane_config,
            },
        )

        for lane, concurrency in lane_config.items():
            self.process(lane, concurrency)

        try:
            while not self._shutdown.is_set():
                if max_iterations is not None and iterations >= max_iterations:
                    self._logger.info(
                        f"Reached max iterations ({max_iterations}), stopping"
                    )
                    break

                try:
                    self.run_maintenance()
                except Exception as e:
                    self._logger.error(
                        "Maintenance pass failed",
                        extra={"error": str(e)},
                        exc_info=True,
                    )
                iterations += 1
                self._shutdown.wait(self.poll_interval)

        except KeyboardInterrupt:
            self._logger.info("Keyboard interrupt received, shutting down")

        finally:
            self.request_shutdown()
            self.join()

        self._logger.info(
            "Worker loop stopped",
            extra={"total_iterations": iterations},
        )

    def join(self, timeout: float | None = None) -> None:
        """Wait for worker threads; in-flight jobs finish first."""
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return

        def handle_signal(signum, frame):
            self._logger.info(f"Received signal {signum}, requesting shutdown")
            self._shutdown.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the loop and lane threads."""
        self._shutdown.set()


# Convenience functions for easy usage


def run_worker_once(
    batch_size: int | None = None,
    lanes: Sequence[str] | None = None,
) -> RunnerResult:
    """Run every lane (or the given ones) once and return results.

    Example:
        >>> from app.workers import run_worker_once
        >>> result = run_worker_once(lanes=["webhook-delivery"])
        >>> print(f"Processed: {result.total_processed}")
    """
    runner = WorkerRunner(batch_size=batch_size)
    return runner.run_once(lanes=lanes)


def run_worker_loop(
    interval_seconds: float | None = None,
    max_iterations: int | None = None,
    batch_size: int | None = None,
    lanes: Sequence[str] | None = None,
) -> None:
    """Run workers continuously until interrupted (Ctrl+C) or max_iterations.

    Example:
        >>> from app.workers import run_worker_loop
        >>> run_worker_loop(interval_seconds=2)  # Ctrl+C to stop
    """
    runner = WorkerRunner(batch_size=batch_size)
    runner.run_loop(
        interval_seconds=interval_seconds,
        max_iterations=max_iterations,
        lanes=lanes,
    )


def lane_stats(session_factory: Callable[[], Session] | None = None) -> dict[str, JobCounts]:
    """Job counts per registered lane."""
    session_factory = session_factory or _default_session_factory
    with session_factory() as session:
        queue = QueueService(session)
        return {lane.name: queue.counts(lane.name) for lane in queue.list_lanes()}


# Configure logging for worker runs
def configure_worker_logging(level: int = logging.INFO) -> None:
    """Configure logging for worker processes.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Set specific loggers
    logging.getLogger("app.workers").setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
