import json

from bulkloader.schemas import ParseResult, RawRecord


def parse_text(text: str) -> ParseResult:
    """Parse a JSON array or newline-delimited JSON held in memory."""
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            records = [item for item in parsed if isinstance(item, dict)]
            return ParseResult(records=records, skipped=len(parsed) - len(records))

    return _parse_lines(text)


def parse_bytes(payload: bytes) -> ParseResult:
    return parse_text(payload.decode("utf-8-sig", errors="replace"))


def _parse_lines(text: str) -> ParseResult:
    records: list[RawRecord] = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if isinstance(value, dict):
            records.append(value)
        else:
            skipped += 1
    return ParseResult(records=records, skipped=skipped)
