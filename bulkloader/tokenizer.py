import codecs
from collections.abc import Callable, Iterator
import json
import logging
import os
from pathlib import Path
import re
from typing import BinaryIO

from bulkloader.schemas import RawRecord


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTES = 4 * 1024 * 1024

# Only these characters change tokenizer state; everything else is copied.
_STRUCTURAL = re.compile(r'[{}"\\]')

ProgressCallback = Callable[[int, int], None]


def progress_percent(bytes_read: int, total_bytes: int) -> int:
    # Capped below 100 until the caller has consumed the whole stream.
    if total_bytes <= 0:
        return 0
    return min(99, round(bytes_read / total_bytes * 100))


class ObjectStream:
    """Lazy, single-pass iterator of records found in a byte source.

    ``skipped`` counts candidate spans that failed to parse or were not
    mappings, plus a trailing object that never closed. It is final once
    iteration is exhausted.
    """

    def __init__(
        self,
        source: BinaryIO,
        *,
        total_bytes: int,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        on_progress: ProgressCallback | None = None,
        name: str = "<stream>",
    ) -> None:
        if chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be positive")
        self.source = source
        self.total_bytes = total_bytes
        self.chunk_bytes = chunk_bytes
        self.on_progress = on_progress
        self.name = name
        self.skipped = 0
        self.bytes_read = 0
        self._iterator = self._scan()

    def __iter__(self) -> Iterator[RawRecord]:
        return self

    def __next__(self) -> RawRecord:
        return next(self._iterator)

    def _scan(self) -> Iterator[RawRecord]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        depth = 0
        in_string = False
        escaped = False
        parts: list[str] = []
        capturing = False

        while True:
            raw = self.source.read(self.chunk_bytes)
            final = not raw
            text = decoder.decode(raw, final=final)
            self.bytes_read += len(raw)

            start = 0
            escape_at = -1
            if escaped and text:
                escape_at = 0
                escaped = False

            for match in _STRUCTURAL.finditer(text):
                pos = match.start()
                if escape_at >= 0:
                    if pos == escape_at:
                        escape_at = -1
                        continue
                    escape_at = -1

                ch = match.group()
                if in_string:
                    if ch == "\\":
                        if pos + 1 == len(text):
                            escaped = True
                        else:
                            escape_at = pos + 1
                    elif ch == '"':
                        in_string = False
                    continue

                if ch == '"':
                    in_string = True
                elif ch == "{":
                    if depth == 0:
                        capturing = True
                        parts = []
                        start = pos
                    depth += 1
                elif ch == "}":
                    if depth == 0:
                        continue
                    depth -= 1
                    if depth == 0 and capturing:
                        parts.append(text[start : pos + 1])
                        candidate = "".join(parts)
                        parts = []
                        capturing = False
                        record = self._parse_candidate(candidate)
                        if record is not None:
                            yield record

            if capturing:
                parts.append(text[start:])

            if self.on_progress is not None and raw:
                self.on_progress(self.bytes_read, self.total_bytes)

            if final:
                break

        if capturing:
            # Closing brace never observed.
            self.skipped += 1
            logger.debug("dropped truncated trailing object", extra={"source": self.name})

    def _parse_candidate(self, candidate: str) -> RawRecord | None:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            self.skipped += 1
            return None
        if not isinstance(value, dict):
            self.skipped += 1
            return None
        return value


def stream_objects(
    source: BinaryIO,
    *,
    total_bytes: int | None = None,
    chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    on_progress: ProgressCallback | None = None,
    name: str = "<stream>",
) -> ObjectStream:
    if total_bytes is None:
        try:
            total_bytes = os.fstat(source.fileno()).st_size
        except (AttributeError, OSError, ValueError):
            total_bytes = 0
    return ObjectStream(
        source,
        total_bytes=total_bytes,
        chunk_bytes=chunk_bytes,
        on_progress=on_progress,
        name=name,
    )


def stream_file(
    path: Path,
    *,
    chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    on_progress: ProgressCallback | None = None,
) -> tuple[list[RawRecord], int]:
    """Read ``path`` to completion and return ``(records, skipped)``."""
    with path.open("rb") as infile:
        stream = stream_objects(
            infile,
            total_bytes=path.stat().st_size,
            chunk_bytes=chunk_bytes,
            on_progress=on_progress,
            name=path.name,
        )
        records = list(stream)
    return records, stream.skipped
