from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
import threading
import time

from bulkloader.client import ImportResponse
from bulkloader.error_log import ErrorAggregator
from bulkloader.retry import RetryAbortedError, RetryExhaustedError, run_with_retries
from bulkloader.schemas import BatchResult, ImportStats, RawRecord


logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_ABORTED = "aborted"
OUTCOME_CIRCUIT_OPEN = "circuit_open"

ImportBatchFn = Callable[[list[RawRecord]], ImportResponse]
StatsCallback = Callable[[ImportStats, BatchResult], None]


@dataclass
class BatchRunSummary:
    outcome: str
    stats: ImportStats
    produced_ids: list[str] = field(default_factory=list)
    export_fragments: list[object] = field(default_factory=list)
    consecutive_failures: int = 0


class BatchScheduler:
    """Sends records to the import service one batch at a time.

    Each batch gets ``max_attempts`` tries with linear backoff. A batch that
    exhausts its tries is counted as failed in full, even if the service
    applied part of it. ``max_consecutive_failures`` failed batches in a row
    stop the run.
    """

    def __init__(
        self,
        import_batch: ImportBatchFn,
        *,
        batch_size: int = 3,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        max_consecutive_failures: int = 5,
        pacing_seconds: float = 0.2,
        errors: ErrorAggregator | None = None,
        on_progress: StatsCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.import_batch = import_batch
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.pacing_seconds = pacing_seconds
        self.errors = errors if errors is not None else ErrorAggregator()
        self.on_progress = on_progress
        self.sleep = sleep

    def run(
        self,
        records: Sequence[RawRecord],
        *,
        parse_skipped: int = 0,
        abort_event: threading.Event | None = None,
    ) -> BatchRunSummary:
        abort_event = abort_event or threading.Event()
        stats = ImportStats(total=len(records), parse_skipped=parse_skipped)
        summary = BatchRunSummary(outcome=OUTCOME_COMPLETED, stats=stats)
        consecutive_failures = 0

        for batch_index, start in enumerate(range(0, len(records), self.batch_size)):
            if abort_event.is_set():
                summary.outcome = OUTCOME_ABORTED
                break

            batch = list(records[start : start + self.batch_size])
            try:
                response = run_with_retries(
                    lambda: self.import_batch(batch),
                    max_attempts=self.max_attempts,
                    backoff_seconds=self.backoff_seconds,
                    on_attempt_failure=lambda attempt, exc: self._log_attempt_failure(batch_index, attempt, exc),
                    abort_event=abort_event,
                    sleep=self.sleep,
                )
            except RetryAbortedError:
                summary.outcome = OUTCOME_ABORTED
                break
            except RetryExhaustedError as exc:
                consecutive_failures += 1
                result = BatchResult(
                    batch_index=batch_index,
                    succeeded=False,
                    records_processed=len(batch),
                    error_message=str(exc),
                )
                stats.processed += len(batch)
                stats.errors += len(batch)
                self.errors.add(f"Batch {batch_index + 1}", str(exc))
                self._emit(stats, result)

                if consecutive_failures >= self.max_consecutive_failures:
                    logger.error(
                        "import stopped after consecutive batch failures",
                        extra={"consecutive_failures": consecutive_failures, "processed": stats.processed},
                    )
                    summary.outcome = OUTCOME_CIRCUIT_OPEN
                    break
            else:
                consecutive_failures = 0
                result = BatchResult(
                    batch_index=batch_index,
                    succeeded=True,
                    records_processed=len(batch),
                    produced_ids=list(response.produced_ids),
                )
                stats.processed += len(batch)
                stats.succeeded += response.succeeded
                stats.partial += response.partial
                stats.errors += response.errors
                self.errors.extend(response.error_details)
                summary.produced_ids.extend(response.produced_ids)
                if response.ancillary_content is not None:
                    summary.export_fragments.append(response.ancillary_content)
                self._emit(stats, result)

            self.sleep(self.pacing_seconds)

        summary.consecutive_failures = consecutive_failures
        logger.info("batch import finished", extra={"outcome": summary.outcome, **stats.snapshot()})
        return summary

    def _emit(self, stats: ImportStats, result: BatchResult) -> None:
        if self.on_progress is not None:
            self.on_progress(stats, result)

    def _log_attempt_failure(self, batch_index: int, attempt: int, exc: Exception) -> None:
        logger.warning(
            "batch attempt failed",
            extra={"batch_index": batch_index, "attempt": attempt, "error": str(exc)},
        )
