import json
from pathlib import Path

import pytest

from bulkloader.config import Settings
from bulkloader.fallback import parse_bytes, parse_text
from bulkloader.ingest import UnsupportedSourceError, parse_sources, split_records


ROWS = [{"id": 1, "title": "A"}, {"id": 2, "title": "B"}, {"id": 3, "title": "C"}]


def test_array_and_line_forms_yield_same_records() -> None:
    as_array = parse_text(json.dumps(ROWS))
    as_lines = parse_text("\n".join(json.dumps(row) for row in ROWS))

    assert as_array.records == ROWS
    assert as_lines.records == ROWS
    assert as_array.skipped == as_lines.skipped == 0


def test_array_keeps_mappings_only() -> None:
    result = parse_text('[{"id": 1}, 2, "x", null, {"id": 2}]')

    assert result.records == [{"id": 1}, {"id": 2}]
    assert result.skipped == 3


def test_broken_array_falls_through_to_line_mode() -> None:
    text = '[{"id": 1},\n{"id": 2}\n'

    result = parse_text(text)

    # Neither line is valid JSON on its own except the second.
    assert result.records == [{"id": 2}]
    assert result.skipped == 1


def test_line_mode_skips_blank_and_bad_lines() -> None:
    result = parse_bytes(b'\xef\xbb\xbf{"id": 1}\n\n   \nnot json\n[1, 2]\n{"id": 2}\n')

    assert result.records == [{"id": 1}, {"id": 2}]
    assert result.skipped == 2


def _write_jsonl(path: Path, count: int) -> None:
    path.write_text("".join(json.dumps({"id": index, "body": "x" * 10}) + "\n" for index in range(count)), encoding="utf-8")


def test_three_files_with_one_unparseable(temp_workspace: Path, test_settings: Settings) -> None:
    input_dir = temp_workspace / "data" / "input"
    first = input_dir / "first.jsonl"
    broken = input_dir / "broken.txt"
    last = input_dir / "last.json"
    _write_jsonl(first, 100)
    broken.write_text("{oops}\n{still: broken}\n{", encoding="utf-8")
    last.write_text(json.dumps([{"id": index} for index in range(50)]), encoding="utf-8")

    parsed = parse_sources([first, broken, last], test_settings)

    assert len(parsed.records) == 150
    assert [entry.name for entry in parsed.files] == ["first.jsonl", "broken.txt", "last.json"]
    assert [entry.record_count for entry in parsed.files] == [100, 0, 50]
    assert parsed.files[0].skipped_count == 0
    assert parsed.files[1].skipped_count > 0
    assert parsed.files[2].skipped_count == 0


def test_large_files_stream_through_tokenizer(temp_workspace: Path, test_settings: Settings) -> None:
    source = temp_workspace / "data" / "input" / "dump.txt"
    # Concatenated literals: not an array and not one object per line.
    source.write_text("".join(json.dumps({"id": index, "body": "y" * 20}) for index in range(40)), encoding="utf-8")
    assert source.stat().st_size > test_settings.stream_threshold_bytes
    progress: list[int] = []

    parsed = parse_sources([source], test_settings, on_progress=lambda name, pct: progress.append(pct))

    assert [record["id"] for record in parsed.records] == list(range(40))
    assert progress
    assert max(progress) <= 99


def test_rejects_unsupported_extensions_before_parsing(temp_workspace: Path, test_settings: Settings) -> None:
    good = temp_workspace / "data" / "input" / "good.json"
    good.write_text("[]", encoding="utf-8")
    bad = temp_workspace / "data" / "input" / "cases.csv"
    bad.write_text("id\n1\n", encoding="utf-8")

    with pytest.raises(UnsupportedSourceError, match="cases.csv"):
        parse_sources([good, bad], test_settings)


def test_missing_file_raises(temp_workspace: Path, test_settings: Settings) -> None:
    with pytest.raises(FileNotFoundError):
        parse_sources([temp_workspace / "data" / "input" / "absent.json"], test_settings)


def test_split_writes_numbered_parts(tmp_path: Path) -> None:
    records = [{"id": index} for index in range(7)]

    written = split_records(records, part_size=3, out_dir=tmp_path / "parts", base_name="echr_chunk")

    assert [path.name for path in written] == [
        "echr_chunk_part001.json",
        "echr_chunk_part002.json",
        "echr_chunk_part003.json",
    ]
    assert json.loads(written[-1].read_text(encoding="utf-8")) == [{"id": 6}]
