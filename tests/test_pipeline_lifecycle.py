import json
from pathlib import Path
import threading

from sqlalchemy import select

from bulkloader.continuation import ContinuationState
from bulkloader.db_models import ContinuationCursorRecord, ErrorDetailRecord, ImportRun, ProducedRecord, SourceFile


def write_input_files(root: Path) -> list[Path]:
    input_dir = root / "data" / "input"
    first = input_dir / "cases-a.jsonl"
    broken = input_dir / "cases-b.txt"
    last = input_dir / "cases-c.json"

    with first.open("w", encoding="utf-8") as outfile:
        for index in range(100):
            outfile.write(json.dumps({"docname": f"Case {index}", "appno": f"{index}/20"}))
            outfile.write("\n")
    broken.write_text("{this is not json}\n{nor: this}\n", encoding="utf-8")
    last.write_text(json.dumps([{"docname": f"Late {index}"} for index in range(50)]), encoding="utf-8")
    return [first, broken, last]


def test_full_run_lifecycle_and_idempotency(runner, service, temp_workspace: Path) -> None:
    paths = write_input_files(temp_workspace)
    run_key = "echr-2026-10-18"
    snapshots: list[dict[str, int]] = []

    first = runner.run(paths, run_key=run_key, options={"practiceCategory": "echr"}, on_progress=snapshots.append)
    calls_after_first = len(service.import_calls)
    second = runner.run(paths, run_key=run_key)

    assert first.status == "completed"
    assert first.total_records == 150
    assert first.processed_records == 150
    assert first.succeeded_records == 150
    assert first.error_records == 0
    assert [entry.record_count for entry in first.files] == [100, 0, 50]
    assert [entry.skipped_count > 0 for entry in first.files] == [False, True, False]
    assert first.parse_skipped == first.files[1].skipped_count
    assert first.reused_existing_run is False
    assert snapshots[-1]["percent_complete"] == 100
    assert service.import_options[0] == {"practiceCategory": "echr"}

    assert second.reused_existing_run is True
    assert second.run_id == first.run_id
    assert [entry.name for entry in second.files] == [entry.name for entry in first.files]
    assert len(service.import_calls) == calls_after_first

    report_path = temp_workspace / "outputs" / "reports" / f"{run_key}.json"
    export_path = temp_workspace / "outputs" / "exports" / f"{run_key}.json"
    assert report_path.exists()
    assert export_path.exists()
    assert not (temp_workspace / "outputs" / "errors" / f"{run_key}.json").exists()
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["outcome"] == "completed"
    assert report["stats"]["total"] == 150
    assert len(json.loads(export_path.read_text(encoding="utf-8"))) == 150

    with runner.session_factory() as db:
        run = db.execute(select(ImportRun).where(ImportRun.run_key == run_key)).scalar_one()
        assert run.status == "completed"
        files = db.execute(select(SourceFile).where(SourceFile.run_id == run.id)).scalars().all()
        assert len(files) == 3
        produced = db.execute(select(ProducedRecord).where(ProducedRecord.run_id == run.id)).scalars().all()
        assert len(produced) == 150


def test_circuit_open_run_records_errors_and_can_restart(runner, service, temp_workspace: Path) -> None:
    paths = write_input_files(temp_workspace)
    run_key = "echr-circuit"
    service.always_fail = True

    first = runner.run(paths, run_key=run_key)

    assert first.status == "circuit_open"
    assert first.processed_records == 15
    assert first.error_records == 15
    assert first.processed_records < first.total_records
    assert len(runner.errors) == 5
    error_report = temp_workspace / "outputs" / "errors" / f"{run_key}.json"
    assert json.loads(error_report.read_text(encoding="utf-8"))["count"] == 5

    with runner.session_factory() as db:
        run = db.execute(select(ImportRun).where(ImportRun.run_key == run_key)).scalar_one()
        details = db.execute(select(ErrorDetailRecord).where(ErrorDetailRecord.run_id == run.id)).scalars().all()
        assert len(details) == 5

    service.always_fail = False
    second = runner.run(paths, run_key=run_key)

    assert second.status == "completed"
    assert second.reused_existing_run is False
    assert second.processed_records == 150
    assert len(runner.errors) == 0

    with runner.session_factory() as db:
        run = db.execute(select(ImportRun).where(ImportRun.run_key == run_key)).scalar_one()
        details = db.execute(select(ErrorDetailRecord).where(ErrorDetailRecord.run_id == run.id)).scalars().all()
        files = db.execute(select(SourceFile).where(SourceFile.run_id == run.id)).scalars().all()
        assert details == []
        assert len(files) == 3


def test_aborted_run_keeps_partial_progress(runner, service, temp_workspace: Path) -> None:
    paths = write_input_files(temp_workspace)
    abort = threading.Event()

    def on_progress(snapshot: dict[str, int]) -> None:
        if snapshot["processed"] >= 6:
            abort.set()

    result = runner.run(paths, run_key="echr-abort", abort_event=abort, on_progress=on_progress)

    assert result.status == "aborted"
    assert result.processed_records == 6
    assert len(service.import_calls) == 2


def test_unsupported_source_fails_run(runner, service, temp_workspace: Path) -> None:
    bad = temp_workspace / "data" / "input" / "cases.xml"
    bad.write_text("<cases/>", encoding="utf-8")

    result = runner.run([bad], run_key="bad-source")

    assert result.status == "failed"
    assert service.import_calls == []
    with runner.session_factory() as db:
        run = db.execute(select(ImportRun).where(ImportRun.run_key == "bad-source")).scalar_one()
        assert "cases.xml" in run.error


def test_enrichment_pause_and_resume_from_persisted_cursor(runner, service, temp_workspace: Path) -> None:
    paths = write_input_files(temp_workspace)
    runner.run(paths, run_key="echr-enrich")

    loop = runner.build_continuation("echr-enrich")
    assert loop.state is ContinuationState.IDLE
    loop.start()
    loop.step()
    loop.step()
    loop.pause()
    assert loop.cursor.next_index == 8

    # A fresh loop picks up the saved cursor.
    resumed = runner.enrich("echr-enrich")

    assert resumed.state is ContinuationState.DONE
    sent = [identifier for call in service.enrich_calls for identifier in call]
    assert sent == [f"doc-{index}" for index in range(1, 151)]
    assert resumed.cursor.done_count == 150

    with runner.session_factory() as db:
        run = db.execute(select(ImportRun).where(ImportRun.run_key == "echr-enrich")).scalar_one()
        cursor = db.execute(
            select(ContinuationCursorRecord).where(ContinuationCursorRecord.run_id == run.id)
        ).scalar_one()
        assert cursor.state == "done"
        assert cursor.next_index == 150


def test_enrichment_restart_ignores_saved_cursor(runner, service, temp_workspace: Path) -> None:
    paths = write_input_files(temp_workspace)
    runner.run(paths, run_key="echr-restart")
    runner.enrich("echr-restart")
    first_pass = len(service.enrich_calls)

    finished = runner.build_continuation("echr-restart")
    assert finished.state is ContinuationState.DONE

    runner.enrich("echr-restart", restart=True)

    assert len(service.enrich_calls) == 2 * first_pass
