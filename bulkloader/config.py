from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    import_url: str
    enrich_url: str
    api_token: str | None
    batch_size: int
    max_batch_attempts: int
    retry_backoff_seconds: float
    max_consecutive_failures: int
    batch_pacing_seconds: float
    request_timeout_seconds: float | None
    tokenizer_chunk_bytes: int
    stream_threshold_bytes: int
    max_file_bytes: int
    continuation_chunk_size: int
    continuation_delay_seconds: float
    enrich_concurrency_hint: int
    enrich_delay_hint_ms: int
    split_size: int


def _timeout_from_env() -> float | None:
    # Zero disables the per-call timeout.
    value = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "300"))
    return value if value > 0 else None


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "bulkloader"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./bulkloader.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        import_url=os.getenv("IMPORT_URL", "http://localhost:8000/import"),
        enrich_url=os.getenv("ENRICH_URL", "http://localhost:8000/enrich"),
        api_token=os.getenv("API_TOKEN") or None,
        batch_size=int(os.getenv("BATCH_SIZE", "3")),
        max_batch_attempts=int(os.getenv("MAX_BATCH_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "2")),
        max_consecutive_failures=int(os.getenv("MAX_CONSECUTIVE_FAILURES", "5")),
        batch_pacing_seconds=float(os.getenv("BATCH_PACING_SECONDS", "0.2")),
        request_timeout_seconds=_timeout_from_env(),
        tokenizer_chunk_bytes=int(os.getenv("TOKENIZER_CHUNK_BYTES", str(4 * 1024 * 1024))),
        stream_threshold_bytes=int(os.getenv("STREAM_THRESHOLD_BYTES", str(8 * 1024 * 1024))),
        max_file_bytes=int(os.getenv("MAX_FILE_BYTES", str(500 * 1024 * 1024))),
        continuation_chunk_size=int(os.getenv("CONTINUATION_CHUNK_SIZE", "20")),
        continuation_delay_seconds=float(os.getenv("CONTINUATION_DELAY_SECONDS", "0.5")),
        enrich_concurrency_hint=int(os.getenv("ENRICH_CONCURRENCY_HINT", "3")),
        enrich_delay_hint_ms=int(os.getenv("ENRICH_DELAY_HINT_MS", "3000")),
        split_size=int(os.getenv("SPLIT_SIZE", "200")),
    )
