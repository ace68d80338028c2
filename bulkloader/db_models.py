from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ImportRun(Base):
    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default="queued")
    options: Mapped[str] = mapped_column(Text, default="{}")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    total_records: Mapped[int] = mapped_column(Integer, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, default=0)
    succeeded_records: Mapped[int] = mapped_column(Integer, default=0)
    partial_records: Mapped[int] = mapped_column(Integer, default=0)
    error_records: Mapped[int] = mapped_column(Integer, default=0)
    parse_skipped: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    source_files: Mapped[list["SourceFile"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    produced_ids: Mapped[list["ProducedRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="ProducedRecord.position"
    )
    error_details: Mapped[list["ErrorDetailRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    cursor: Mapped[Optional["ContinuationCursorRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", uselist=False
    )


class SourceFile(Base):
    __tablename__ = "source_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(512))
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped[ImportRun] = relationship(back_populates="source_files")


class ProducedRecord(Base):
    __tablename__ = "produced_records"
    __table_args__ = (UniqueConstraint("run_id", "record_id", name="uq_run_produced_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer)
    record_id: Mapped[str] = mapped_column(String(128))

    run: Mapped[ImportRun] = relationship(back_populates="produced_ids")


class ErrorDetailRecord(Base):
    __tablename__ = "error_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(Text)
    error: Mapped[str] = mapped_column(Text)

    run: Mapped[ImportRun] = relationship(back_populates="error_details")


class ContinuationCursorRecord(Base):
    __tablename__ = "continuation_cursors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("import_runs.id", ondelete="CASCADE"), unique=True)
    state: Mapped[str] = mapped_column(String(32), default="idle")
    next_index: Mapped[int] = mapped_column(Integer, default=0)
    total: Mapped[int] = mapped_column(Integer, default=0)
    done_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    run: Mapped[ImportRun] = relationship(back_populates="cursor")
