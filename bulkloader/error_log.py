from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path

from bulkloader.ingest import write_json
from bulkloader.schemas import ErrorDetail


class ErrorAggregator:
    """Per-run list of failures, kept for display and the error report."""

    def __init__(self) -> None:
        self._entries: list[ErrorDetail] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ErrorDetail]:
        return iter(self._entries)

    @property
    def entries(self) -> list[ErrorDetail]:
        return list(self._entries)

    def add(self, title: str, error: str) -> None:
        self._entries.append(ErrorDetail(title=title, error=error))

    def extend(self, details: Iterable[ErrorDetail | Mapping[str, object]]) -> None:
        for detail in details:
            if isinstance(detail, ErrorDetail):
                self._entries.append(detail)
            else:
                self.add(str(detail.get("title") or "Unknown"), str(detail.get("error") or "Unknown error"))

    def clear(self) -> None:
        self._entries.clear()

    def to_report(self) -> dict[str, object]:
        return {
            "generated_at": datetime.now(UTC).isoformat(),
            "count": len(self._entries),
            "errors": [{"title": entry.title, "error": entry.error} for entry in self._entries],
        }

    def write_report(self, path: Path) -> Path:
        write_json(path, self.to_report())
        return path
