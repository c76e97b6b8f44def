"""Base worker abstraction.

Provides a common lifecycle for background workers that:
1. Poll for candidate work items
2. Claim items atomically so concurrent workers never share one
3. Process items and report success or failure
4. Provide structured logging and observability

Workers are driven synchronously by the runner; they are testable via
direct calls to ``run()``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlmodel import Session

logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    """Status of a worker run."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items processed, some failed
    FAILED = "failed"
    NO_WORK = "no_work"


@dataclass
class WorkerResult:
    """Result of a worker processing cycle.

    Attributes:
        status: Overall status of the worker run
        processed_count: Number of items successfully processed
        failed_count: Number of items that failed
        skipped_count: Candidates another worker claimed first
        duration_ms: Time taken for the processing cycle
        errors: List of error details for failed items
        metadata: Additional worker-specific metadata
    """

    status: WorkerStatus
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "status": self.status.value,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "metadata": self.metadata,
        }


# Candidate type (what fetch_pending returns) and claimed type
C = TypeVar("C")
T = TypeVar("T")


class WorkerBase(ABC, Generic[C, T]):
    """Abstract base class for background workers.

    Workers follow this lifecycle:
    1. fetch_pending() - Get candidate items
    2. claim() - Take ownership; None when someone else won
    3. process_item() - Do the actual work
    4. mark_completed() or mark_failed() - Record the outcome

    Subclasses must implement all abstract methods.
    """

    def __init__(
        self,
        batch_size: int = 50,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            batch_size: Maximum candidates to look at per cycle
            stop_event: Set to stop between items (graceful shutdown)
        """
        self.batch_size = batch_size
        self.stop_event = stop_event or threading.Event()
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def worker_name(self) -> str:
        """Return the worker name for logging."""
        pass

    @abstractmethod
    def fetch_pending(self, session: Session) -> list[C]:
        """Fetch candidate items (up to batch_size)."""
        pass

    @abstractmethod
    def claim(self, session: Session, candidate: C) -> T | None:
        """Atomically take ownership of a candidate.

        Returns:
            The claimed item, or None if another worker claimed it first
        """
        pass

    @abstractmethod
    def process_item(self, session: Session, item: T) -> Any:
        """Process a single claimed item.

        Returns:
            Worker-specific outcome passed on to mark_completed

        Raises:
            Exception: If processing fails
        """
        pass

    @abstractmethod
    def mark_completed(self, session: Session, item: T, outcome: Any) -> None:
        """Record a successfully processed item."""
        pass

    @abstractmethod
    def mark_failed(
        self,
        session: Session,
        item: T,
        error: str,
        can_retry: bool,
        status_code: int | None = None,
    ) -> None:
        """Record a failed item.

        Args:
            session: Database session
            item: The failed item
            error: Error message (truncated)
            can_retry: Whether the failure may be retried
            status_code: Remote status code, when there was one
        """
        pass

    @abstractmethod
    def get_item_id(self, item: C | T) -> UUID:
        """Get the unique identifier for a candidate or claimed item."""
        pass

    def should_retry(self, item: T, error: Exception) -> bool:
        """Check if a failure may be retried.

        Default implementation honours a ``retryable`` attribute on the
        exception and retries everything else.
        """
        return getattr(error, "retryable", True)

    def run(self, session: Session) -> WorkerResult:
        """Execute one processing cycle.

        Args:
            session: Database session owned by the calling thread

        Returns:
            WorkerResult with processing statistics
        """
        start_time = datetime.utcnow()
        processed = 0
        failed = 0
        skipped = 0
        errors: list[dict[str, Any]] = []

        try:
            candidates = self.fetch_pending(session)

            if not candidates:
                self._logger.debug(f"[{self.worker_name}] No pending items")
                return WorkerResult(
                    status=WorkerStatus.NO_WORK,
                    duration_ms=self._elapsed_ms(start_time),
                )

            self._logger.debug(
                f"[{self.worker_name}] Found {len(candidates)} candidates"
            )

            for candidate in candidates:
                if self.stop_event.is_set():
                    self._logger.info(f"[{self.worker_name}] Stop requested, ending cycle")
                    break

                item = self.claim(session, candidate)
                if item is None:
                    skipped += 1
                    self._logger.debug(
                        f"[{self.worker_name}] Item {self.get_item_id(candidate)} claimed elsewhere"
                    )
                    continue

                item_id = self.get_item_id(item)
                try:
                    outcome = self.process_item(session, item)
                    self.mark_completed(session, item, outcome)

                    processed += 1
                    self._logger.info(
                        f"[{self.worker_name}] Processed item {item_id}",
                        extra={"item_id": str(item_id)},
                    )

                except Exception as e:
                    session.rollback()
                    failed += 1
                    error_msg = str(e)[:500] or e.__class__.__name__

                    can_retry = self.should_retry(item, e)
                    self.mark_failed(
                        session,
                        item,
                        error_msg,
                        can_retry,
                        getattr(e, "status_code", None),
                    )

                    errors.append({
                        "item_id": str(item_id),
                        "error": error_msg,
                        "can_retry": can_retry,
                    })

                    self._logger.warning(
                        f"[{self.worker_name}] Failed to process item {item_id}",
                        extra={
                            "item_id": str(item_id),
                            "error": error_msg,
                            "can_retry": can_retry,
                        },
                        exc_info=True,
                    )

        except Exception as e:
            session.rollback()
            self._logger.error(
                f"[{self.worker_name}] Worker cycle failed",
                extra={"error": str(e)},
                exc_info=True,
            )
            return WorkerResult(
                status=WorkerStatus.FAILED,
                processed_count=processed,
                failed_count=failed,
                skipped_count=skipped,
                duration_ms=self._elapsed_ms(start_time),
                errors=[*errors, {"error": str(e)[:500]}],
            )

        # Determine overall status
        if failed == 0 and processed > 0:
            status = WorkerStatus.SUCCESS
        elif processed > 0 and failed > 0:
            status = WorkerStatus.PARTIAL
        elif failed > 0:
            status = WorkerStatus.FAILED
        else:
            status = WorkerStatus.NO_WORK

        result = WorkerResult(
            status=status,
            processed_count=processed,
            failed_count=failed,
            skipped_count=skipped,
            duration_ms=self._elapsed_ms(start_time),
            errors=errors,
        )

        if status != WorkerStatus.NO_WORK:
            self._logger.info(
                f"[{self.worker_name}] Cycle complete",
                extra=result.to_dict(),
            )

        return result

    def _elapsed_ms(self, start: datetime) -> float:
        """Calculate elapsed time in milliseconds."""
        return (datetime.utcnow() - start).total_seconds() * 1000
