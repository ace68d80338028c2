from collections.abc import Generator
from pathlib import Path

import pytest

from bulkloader.client import EnrichResponse, ImportResponse, RemoteServiceError
from bulkloader.config import Settings
from bulkloader.database import build_session_factory
from bulkloader.pipeline import ImportRunner


class FakeImportService:
    """Stands in for the remote service; fails the first ``fail_first`` import calls."""

    def __init__(self, *, fail_first: int = 0, always_fail: bool = False, enrich_fail_chunks: set[int] | None = None):
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.enrich_fail_chunks = enrich_fail_chunks or set()
        self.import_calls: list[list[dict[str, object]]] = []
        self.import_options: list[dict[str, object] | None] = []
        self.enrich_calls: list[list[str]] = []
        self._next_id = 1

    def import_batch(self, records, options=None) -> ImportResponse:
        self.import_calls.append(list(records))
        self.import_options.append(options)
        if self.always_fail or len(self.import_calls) <= self.fail_first:
            raise RemoteServiceError("service unavailable")

        produced = []
        for _ in records:
            produced.append(f"doc-{self._next_id}")
            self._next_id += 1
        return ImportResponse(
            batch_processed=len(records),
            succeeded=len(records),
            partial=0,
            errors=0,
            produced_ids=produced,
            ancillary_content=[{"id": record_id} for record_id in produced],
        )

    def enrich(self, identifiers, *, concurrency_hint, delay_hint_ms) -> EnrichResponse:
        self.enrich_calls.append(list(identifiers))
        if len(self.enrich_calls) in self.enrich_fail_chunks:
            raise RemoteServiceError("enrichment failed")
        return EnrichResponse(processed=len(identifiers), errors=0)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="bulkloader",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        import_url="http://import.test/import",
        enrich_url="http://import.test/enrich",
        api_token=None,
        batch_size=3,
        max_batch_attempts=3,
        retry_backoff_seconds=2.0,
        max_consecutive_failures=5,
        batch_pacing_seconds=0.2,
        request_timeout_seconds=30.0,
        tokenizer_chunk_bytes=64,
        stream_threshold_bytes=256,
        max_file_bytes=10 * 1024 * 1024,
        continuation_chunk_size=4,
        continuation_delay_seconds=0.5,
        enrich_concurrency_hint=3,
        enrich_delay_hint_ms=3000,
        split_size=200,
    )


@pytest.fixture()
def service_factory() -> type[FakeImportService]:
    return FakeImportService


@pytest.fixture()
def service() -> FakeImportService:
    return FakeImportService()


@pytest.fixture()
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def runner(test_settings: Settings, service: FakeImportService, sleeps: SleepRecorder) -> Generator[ImportRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield ImportRunner(test_settings, session_factory, client=service, sleep=sleeps)
