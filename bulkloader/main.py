import argparse
from dataclasses import replace
import json
import logging
from pathlib import Path
import threading

from bulkloader.config import get_settings
from bulkloader.continuation import ContinuationLoop, ContinuationState
from bulkloader.database import build_session_factory
from bulkloader.ingest import UnsupportedSourceError, parse_sources, split_records
from bulkloader.pipeline import ImportRunner, UnknownRunError
from bulkloader.scheduler import start_continuation
from bulkloader.schemas import ImportResult


logger = logging.getLogger(__name__)


def _parse_option(raw: str) -> tuple[str, object]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected key=value, got {raw!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bulk import documents through the remote import service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="import one or more files")
    run_parser.add_argument("files", nargs="+", type=Path, help="JSON, JSONL or TXT sources")
    run_parser.add_argument("--run-key", required=False, help="Idempotency key for this run")
    run_parser.add_argument("--batch-size", type=int, help="Records per import request")
    run_parser.add_argument(
        "--option",
        dest="options",
        action="append",
        type=_parse_option,
        default=[],
        help="Import option forwarded to the service as key=value (repeatable)",
    )

    enrich_parser = subparsers.add_parser("enrich", help="run or resume enrichment for an import run")
    enrich_parser.add_argument("--run-key", required=True, help="Run whose produced records are enriched")
    enrich_parser.add_argument("--restart", action="store_true", help="ignore a saved cursor and start over")

    split_parser = subparsers.add_parser("split", help="split sources into smaller JSON part files")
    split_parser.add_argument("files", nargs="+", type=Path, help="JSON, JSONL or TXT sources")
    split_parser.add_argument("--size", type=int, help="Records per part file")
    split_parser.add_argument("--out-dir", type=Path, required=True, help="Directory for part files")
    split_parser.add_argument("--base-name", default="records_chunk", help="Part file name prefix")

    return parser.parse_args(argv)


def _run_import(args: argparse.Namespace, runner: ImportRunner) -> int:
    run_key = args.run_key or "-".join(path.stem for path in args.files)
    abort_event = threading.Event()
    outcome: dict[str, ImportResult] = {}
    failures: list[Exception] = []

    def work() -> None:
        try:
            outcome["result"] = runner.run(
                args.files, run_key=run_key, options=dict(args.options), abort_event=abort_event
            )
        except Exception as exc:
            logger.exception("import run crashed before it was recorded", extra={"run_key": run_key})
            failures.append(exc)

    # The import runs on a worker thread so Ctrl-C can set the abort flag.
    worker = threading.Thread(target=work, name="import-worker")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.warning("abort requested, stopping before the next batch", extra={"run_key": run_key})
        abort_event.set()
        worker.join()

    if failures:
        print(f"run_key={run_key} status=failed error={failures[0]}")
        return 1
    result = outcome["result"]

    print(
        "run_id={run_id} run_key={run_key} status={status} total={total} processed={processed} "
        "succeeded={succeeded} partial={partial} errors={errors} skipped={skipped} reused={reused} "
        "report={report}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            status=result.status,
            total=result.total_records,
            processed=result.processed_records,
            succeeded=result.succeeded_records,
            partial=result.partial_records,
            errors=result.error_records,
            skipped=result.parse_skipped,
            reused=result.reused_existing_run,
            report=result.report_path,
        )
    )
    for entry in result.files:
        print(f"file={entry.name} records={entry.record_count} skipped={entry.skipped_count}")
    return 0 if result.status == "completed" else 1


def _run_enrich(args: argparse.Namespace, runner: ImportRunner) -> int:
    try:
        loop = runner.build_continuation(args.run_key, restart=args.restart)
    except UnknownRunError as exc:
        print(f"error={exc}")
        return 1
    if loop.state is ContinuationState.DONE:
        print(f"run_key={args.run_key} state=done " + _cursor_fields(loop))
        return 0

    scheduler, chain = start_continuation(loop, resume=loop.state is ContinuationState.PAUSED)
    try:
        while not chain.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        # The last chunk may have finished or crashed since the previous poll.
        if loop.is_running and not chain.stopped.is_set():
            chain.pause()
    finally:
        # Waits for an in-flight chunk so its cursor update is saved.
        scheduler.shutdown(wait=True)

    print(f"run_key={args.run_key} state={loop.state.value} " + _cursor_fields(loop))
    if loop.state not in (ContinuationState.DONE, ContinuationState.PAUSED):
        # A chunk job crashed and the chain stopped without settling.
        logger.error(
            "continuation stopped unexpectedly",
            extra={"run_key": args.run_key, "state": loop.state.value, **loop.cursor.as_dict()},
        )
        return 1
    return 0


def _cursor_fields(loop: ContinuationLoop) -> str:
    cursor = loop.cursor
    return f"next_index={cursor.next_index} total={cursor.total} done={cursor.done_count} errors={cursor.error_count}"


def _run_split(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        parsed = parse_sources(args.files, settings)
    except (UnsupportedSourceError, FileNotFoundError) as exc:
        print(f"error={exc}")
        return 1
    written = split_records(
        parsed.records,
        part_size=args.size or settings.split_size,
        out_dir=args.out_dir,
        base_name=args.base_name,
    )
    print(f"records={len(parsed.records)} skipped={parsed.skipped} parts={len(written)} out_dir={args.out_dir}")
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "split":
        raise SystemExit(_run_split(args))

    if args.command == "run" and args.batch_size:
        settings = replace(settings, batch_size=args.batch_size)

    session_factory = build_session_factory(settings.database_url)
    runner = ImportRunner(settings, session_factory)

    if args.command == "enrich":
        raise SystemExit(_run_enrich(args, runner))
    raise SystemExit(_run_import(args, runner))


if __name__ == "__main__":
    main()
