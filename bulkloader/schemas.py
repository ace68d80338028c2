from dataclasses import asdict, dataclass, field
from typing import TypeAlias


JSONValue: TypeAlias = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
RawRecord: TypeAlias = dict[str, JSONValue]


@dataclass(frozen=True)
class FileEntry:
    name: str
    record_count: int
    skipped_count: int
    error: str | None = None


@dataclass(frozen=True)
class ParseResult:
    records: list[RawRecord]
    skipped: int


@dataclass(frozen=True)
class ErrorDetail:
    title: str
    error: str


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    succeeded: bool
    records_processed: int
    produced_ids: list[str] = field(default_factory=list)
    error_message: str | None = None


@dataclass
class ImportStats:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    partial: int = 0
    errors: int = 0
    parse_skipped: int = 0

    @property
    def outstanding(self) -> int:
        return self.total - self.processed

    @property
    def percent_complete(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.processed / self.total * 100)

    def snapshot(self) -> dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "partial": self.partial,
            "errors": self.errors,
            "skipped": self.parse_skipped,
            "percent_complete": self.percent_complete,
        }


@dataclass
class ContinuationCursor:
    next_index: int = 0
    total: int = 0
    done_count: int = 0
    error_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ImportResult:
    run_id: int
    run_key: str
    status: str
    total_records: int
    processed_records: int
    succeeded_records: int
    partial_records: int
    error_records: int
    parse_skipped: int
    files: list[FileEntry]
    report_path: str | None
    reused_existing_run: bool
