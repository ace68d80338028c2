from collections.abc import Callable, Sequence
import logging
from pathlib import Path
import queue
import threading
import time

from sqlalchemy.orm import Session, sessionmaker

from bulkloader.batch_scheduler import BatchRunSummary, BatchScheduler
from bulkloader.client import ImportServiceClient
from bulkloader.config import Settings
from bulkloader.continuation import ContinuationLoop, ContinuationState
from bulkloader.db_models import ImportRun
from bulkloader.error_log import ErrorAggregator
from bulkloader.ingest import ParsedSources, parse_sources, write_json
from bulkloader.run_store import (
    create_or_get_run,
    get_run_by_key,
    load_cursor,
    load_produced_ids,
    load_source_files,
    mark_run_failed,
    mark_run_finished,
    mark_run_running,
    reset_run_state,
    save_cursor,
    store_error_details,
    store_produced_ids,
    store_source_files,
    update_run_progress,
)
from bulkloader.schemas import ContinuationCursor, FileEntry, ImportResult, ImportStats


logger = logging.getLogger(__name__)

# Runs in these states start over when the same run key is submitted again.
RESTARTABLE_STATUSES = ("failed", "aborted", "circuit_open")


class UnknownRunError(LookupError):
    pass


class ImportRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        client: ImportServiceClient | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.client = client or ImportServiceClient(
            settings.import_url,
            settings.enrich_url,
            token=settings.api_token,
            timeout=settings.request_timeout_seconds,
        )
        self.sleep = sleep
        self.errors = ErrorAggregator()

    def run(
        self,
        paths: Sequence[Path],
        *,
        run_key: str,
        options: dict[str, object] | None = None,
        abort_event: threading.Event | None = None,
        on_progress: Callable[[dict[str, int]], None] | None = None,
    ) -> ImportResult:
        options = options or {}
        with self.session_factory() as db:
            run, created = create_or_get_run(db, run_key=run_key, options=options)
            if not created:
                if run.status in RESTARTABLE_STATUSES:
                    logger.info("restarting previous run", extra={"run_key": run_key, "status": run.status})
                    reset_run_state(db, run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(
                        run,
                        files=load_source_files(db, run.id),
                        report_path=self._report_path(run_key),
                        reused_existing_run=True,
                    )

            mark_run_running(db, run)
            self.errors.clear()

            stats = ImportStats()
            files: list[FileEntry] = []
            try:
                parsed = parse_sources(paths, self.settings, on_progress=self._log_parse_progress)
                files = parsed.files
                store_source_files(db, run_id=run.id, files=files)

                def report(current: ImportStats, _result) -> None:
                    update_run_progress(db, run, current)
                    if on_progress is not None:
                        on_progress(current.snapshot())

                scheduler = BatchScheduler(
                    lambda batch: self.client.import_batch(batch, options),
                    batch_size=self.settings.batch_size,
                    max_attempts=self.settings.max_batch_attempts,
                    backoff_seconds=self.settings.retry_backoff_seconds,
                    max_consecutive_failures=self.settings.max_consecutive_failures,
                    pacing_seconds=self.settings.batch_pacing_seconds,
                    errors=self.errors,
                    on_progress=report,
                    sleep=self.sleep,
                )
                summary = scheduler.run(parsed.records, parse_skipped=parsed.skipped, abort_event=abort_event)
                stats = summary.stats

                store_produced_ids(db, run_id=run.id, record_ids=summary.produced_ids)
                store_error_details(db, run_id=run.id, details=self.errors)
                self._publish_outputs(run_key=run_key, parsed=parsed, summary=summary)

                mark_run_finished(db, run, status=summary.outcome, stats=stats)
            except Exception as exc:
                mark_run_failed(db, run, error=str(exc), stats=stats)
                logger.exception("import run failed", extra={"run_key": run_key})

            return self._result_from_run(
                run,
                files=files,
                report_path=self._report_path(run_key),
                reused_existing_run=False,
            )

    def build_continuation(
        self,
        run_key: str,
        *,
        restart: bool = False,
        channel: "queue.Queue[dict[str, object]] | None" = None,
    ) -> ContinuationLoop:
        """Continuation loop over a run's produced ids, restored from its saved cursor.

        The returned loop is idle (call ``start()``), paused (call ``resume()``)
        or already done.
        """
        with self.session_factory() as db:
            run = self._require_run(db, run_key)
            run_id = run.id
            identifiers = load_produced_ids(db, run_id)
            saved = None if restart else load_cursor(db, run_id)

        def persist(cursor: ContinuationCursor, state: ContinuationState) -> None:
            # Chunks may complete on a scheduler thread; use a fresh session.
            with self.session_factory() as cursor_db:
                save_cursor(cursor_db, run_id=run_id, cursor=cursor, state=state.value)

        kwargs = dict(
            chunk_size=self.settings.continuation_chunk_size,
            delay_seconds=self.settings.continuation_delay_seconds,
            channel=channel,
            save_cursor=persist,
            sleep=self.sleep,
        )
        enrich = self._enrich_chunk
        if saved is None or saved[1] == ContinuationState.IDLE.value:
            return ContinuationLoop(identifiers, enrich, **kwargs)

        cursor, state = saved
        logger.info("restoring continuation cursor", extra={"run_key": run_key, "saved_state": state, **cursor.as_dict()})
        return ContinuationLoop.restore(identifiers, enrich, cursor, **kwargs)

    def enrich(
        self,
        run_key: str,
        *,
        restart: bool = False,
        channel: "queue.Queue[dict[str, object]] | None" = None,
    ) -> ContinuationLoop:
        """Run the continuation on the calling thread until it pauses or finishes."""
        loop = self.build_continuation(run_key, restart=restart, channel=channel)
        if loop.state is ContinuationState.IDLE:
            loop.start()
        elif loop.state is ContinuationState.PAUSED:
            loop.resume()
        loop.run()
        return loop

    def _enrich_chunk(self, identifiers: list[str]):
        return self.client.enrich(
            identifiers,
            concurrency_hint=self.settings.enrich_concurrency_hint,
            delay_hint_ms=self.settings.enrich_delay_hint_ms,
        )

    def _require_run(self, db: Session, run_key: str) -> ImportRun:
        run = get_run_by_key(db, run_key)
        if run is None:
            raise UnknownRunError(f"no import run with key {run_key!r}")
        return run

    def _publish_outputs(self, *, run_key: str, parsed: ParsedSources, summary: BatchRunSummary) -> None:
        output_root = Path(self.settings.output_dir)
        report_path = output_root / "reports" / f"{run_key}.json"
        error_path = output_root / "errors" / f"{run_key}.json"
        export_path = output_root / "exports" / f"{run_key}.json"

        if len(self.errors):
            self.errors.write_report(error_path)

        if summary.export_fragments:
            exported: list[object] = []
            for fragment in summary.export_fragments:
                if isinstance(fragment, list):
                    exported.extend(fragment)
                else:
                    exported.append(fragment)
            write_json(export_path, exported)

        write_json(
            report_path,
            {
                "run_key": run_key,
                "outcome": summary.outcome,
                "stats": summary.stats.snapshot(),
                "files": [
                    {
                        "name": entry.name,
                        "record_count": entry.record_count,
                        "skipped_count": entry.skipped_count,
                        "error": entry.error,
                    }
                    for entry in parsed.files
                ],
                "produced_ids": len(summary.produced_ids),
                "error_count": len(self.errors),
                "error_report": str(error_path) if len(self.errors) else None,
                "export_output": str(export_path) if summary.export_fragments else None,
            },
        )

    def _log_parse_progress(self, source: str, percent: int) -> None:
        logger.debug("parsing source file", extra={"source": source, "percent": percent})

    def _report_path(self, run_key: str) -> str:
        return str(Path(self.settings.output_dir) / "reports" / f"{run_key}.json")

    def _result_from_run(
        self,
        run: ImportRun,
        *,
        files: list[FileEntry],
        report_path: str,
        reused_existing_run: bool,
    ) -> ImportResult:
        return ImportResult(
            run_id=run.id,
            run_key=run.run_key,
            status=run.status,
            total_records=run.total_records,
            processed_records=run.processed_records,
            succeeded_records=run.succeeded_records,
            partial_records=run.partial_records,
            error_records=run.error_records,
            parse_skipped=run.parse_skipped,
            files=files,
            report_path=report_path,
            reused_existing_run=reused_existing_run,
        )
