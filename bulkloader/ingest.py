from collections.abc import Callable, Sequence
from dataclasses import dataclass
import json
import logging
import math
from pathlib import Path

from bulkloader.config import Settings
from bulkloader.fallback import parse_bytes
from bulkloader.schemas import FileEntry, RawRecord
from bulkloader.tokenizer import progress_percent, stream_file


logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".json", ".jsonl", ".txt")


class UnsupportedSourceError(ValueError):
    pass


@dataclass(frozen=True)
class ParsedSources:
    records: list[RawRecord]
    files: list[FileEntry]

    @property
    def skipped(self) -> int:
        return sum(entry.skipped_count for entry in self.files)


def validate_sources(paths: Sequence[Path], *, max_file_bytes: int) -> None:
    unsupported = [path.name for path in paths if path.suffix.lower() not in SUPPORTED_SUFFIXES]
    if unsupported:
        raise UnsupportedSourceError(f"supported extensions are .json, .jsonl, .txt: {', '.join(unsupported)}")

    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"input file not found: {path}")
        if path.stat().st_size > max_file_bytes:
            raise UnsupportedSourceError(f"{path.name} exceeds the {max_file_bytes // (1024 * 1024)} MiB limit")


def parse_file(
    path: Path,
    *,
    chunk_bytes: int,
    stream_threshold_bytes: int,
    on_progress: Callable[[str, int], None] | None = None,
) -> tuple[list[RawRecord], int]:
    size = path.stat().st_size
    if size <= stream_threshold_bytes:
        result = parse_bytes(path.read_bytes())
        return result.records, result.skipped

    def report(bytes_read: int, total_bytes: int) -> None:
        if on_progress is not None:
            on_progress(path.name, progress_percent(bytes_read, total_bytes))

    return stream_file(path, chunk_bytes=chunk_bytes, on_progress=report)


def parse_sources(
    paths: Sequence[Path],
    settings: Settings,
    on_progress: Callable[[str, int], None] | None = None,
) -> ParsedSources:
    validate_sources(paths, max_file_bytes=settings.max_file_bytes)

    records: list[RawRecord] = []
    files: list[FileEntry] = []
    for path in paths:
        try:
            file_records, skipped = parse_file(
                path,
                chunk_bytes=settings.tokenizer_chunk_bytes,
                stream_threshold_bytes=settings.stream_threshold_bytes,
                on_progress=on_progress,
            )
        except OSError as exc:
            # An unreadable file contributes nothing; the others still import.
            logger.warning("failed to read source file", extra={"source": path.name, "error": str(exc)})
            files.append(FileEntry(name=path.name, record_count=0, skipped_count=0, error=str(exc)))
            continue

        files.append(FileEntry(name=path.name, record_count=len(file_records), skipped_count=skipped))
        records.extend(file_records)
        logger.info(
            "parsed source file",
            extra={"source": path.name, "records": len(file_records), "skipped": skipped},
        )

    return ParsedSources(records=records, files=files)


def split_records(records: Sequence[RawRecord], *, part_size: int, out_dir: Path, base_name: str) -> list[Path]:
    if part_size <= 0:
        raise ValueError("part_size must be positive")

    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for index in range(math.ceil(len(records) / part_size)):
        part = list(records[index * part_size : (index + 1) * part_size])
        path = out_dir / f"{base_name}_part{index + 1:03d}.json"
        with path.open("w", encoding="utf-8") as outfile:
            json.dump(part, outfile, indent=2, ensure_ascii=False)
            outfile.write("\n")
        written.append(path)
    return written


def write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, ensure_ascii=False)
        outfile.write("\n")
