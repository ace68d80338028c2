from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
import json

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bulkloader.db_models import (
    ContinuationCursorRecord,
    ErrorDetailRecord,
    ImportRun,
    ProducedRecord,
    SourceFile,
)
from bulkloader.schemas import ContinuationCursor, ErrorDetail, FileEntry, ImportStats


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def get_run_by_key(db: Session, run_key: str) -> ImportRun | None:
    stmt = select(ImportRun).where(ImportRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(db: Session, *, run_key: str, options: dict[str, object]) -> tuple[ImportRun, bool]:
    run = ImportRun(run_key=run_key, options=json.dumps(options, sort_keys=True), status="queued")
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key enforces idempotent run creation.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def reset_run_state(db: Session, run: ImportRun) -> None:
    for model in (SourceFile, ProducedRecord, ErrorDetailRecord, ContinuationCursorRecord):
        db.execute(delete(model).where(model.run_id == run.id))

    run.status = "queued"
    run.error = None
    run.completed_at = None
    _apply_stats(run, ImportStats())
    db.commit()


def mark_run_running(db: Session, run: ImportRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def update_run_progress(db: Session, run: ImportRun, stats: ImportStats) -> None:
    _apply_stats(run, stats)
    db.commit()


def mark_run_finished(db: Session, run: ImportRun, *, status: str, stats: ImportStats) -> None:
    run.status = status
    _apply_stats(run, stats)
    run.completed_at = utc_now()
    run.error = None
    db.commit()


def mark_run_failed(db: Session, run: ImportRun, *, error: str, stats: ImportStats | None = None) -> None:
    run.status = "failed"
    run.error = error
    if stats is not None:
        _apply_stats(run, stats)
    run.completed_at = utc_now()
    db.commit()


def store_source_files(db: Session, *, run_id: int, files: Sequence[FileEntry]) -> None:
    for entry in files:
        db.add(
            SourceFile(
                run_id=run_id,
                name=entry.name,
                record_count=entry.record_count,
                skipped_count=entry.skipped_count,
                error=entry.error,
            )
        )
    db.commit()


def load_source_files(db: Session, run_id: int) -> list[FileEntry]:
    stmt = select(SourceFile).where(SourceFile.run_id == run_id).order_by(SourceFile.id)
    return [
        FileEntry(name=row.name, record_count=row.record_count, skipped_count=row.skipped_count, error=row.error)
        for row in db.execute(stmt).scalars().all()
    ]


def store_produced_ids(db: Session, *, run_id: int, record_ids: Iterable[str]) -> None:
    existing_stmt = select(ProducedRecord.record_id).where(ProducedRecord.run_id == run_id)
    existing = set(db.execute(existing_stmt).scalars().all())
    position = len(existing)

    for record_id in record_ids:
        # The service may report the same id twice across retried batches.
        if record_id in existing:
            continue
        existing.add(record_id)
        db.add(ProducedRecord(run_id=run_id, position=position, record_id=record_id))
        position += 1
    db.commit()


def load_produced_ids(db: Session, run_id: int) -> list[str]:
    stmt = select(ProducedRecord.record_id).where(ProducedRecord.run_id == run_id).order_by(ProducedRecord.position)
    return list(db.execute(stmt).scalars().all())


def store_error_details(db: Session, *, run_id: int, details: Iterable[ErrorDetail]) -> None:
    for detail in details:
        db.add(ErrorDetailRecord(run_id=run_id, title=detail.title, error=detail.error))
    db.commit()


def load_cursor(db: Session, run_id: int) -> tuple[ContinuationCursor, str] | None:
    stmt = select(ContinuationCursorRecord).where(ContinuationCursorRecord.run_id == run_id)
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        return None
    cursor = ContinuationCursor(
        next_index=row.next_index,
        total=row.total,
        done_count=row.done_count,
        error_count=row.error_count,
    )
    return cursor, row.state


def save_cursor(db: Session, *, run_id: int, cursor: ContinuationCursor, state: str) -> None:
    stmt = select(ContinuationCursorRecord).where(ContinuationCursorRecord.run_id == run_id)
    row = db.execute(stmt).scalar_one_or_none()
    if row is None:
        row = ContinuationCursorRecord(run_id=run_id)
        db.add(row)

    row.state = state
    row.next_index = cursor.next_index
    row.total = cursor.total
    row.done_count = cursor.done_count
    row.error_count = cursor.error_count
    row.updated_at = utc_now()
    db.commit()


def _apply_stats(run: ImportRun, stats: ImportStats) -> None:
    run.total_records = stats.total
    run.processed_records = stats.processed
    run.succeeded_records = stats.succeeded
    run.partial_records = stats.partial
    run.error_records = stats.errors
    run.parse_skipped = stats.parse_skipped
