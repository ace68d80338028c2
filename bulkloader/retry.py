from collections.abc import Callable
import threading
import time


class RetryExhaustedError(RuntimeError):
    pass


class RetryAbortedError(RuntimeError):
    pass


def run_with_retries(
    fn: Callable[[], object],
    *,
    max_attempts: int,
    backoff_seconds: float,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    abort_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> object:
    """Call ``fn`` until it succeeds, waiting ``backoff_seconds * attempt`` between tries.

    The abort flag is checked before every backoff wait; once set, no further
    attempt is made.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if attempt >= max_attempts or not retry_allowed:
                break
            if abort_event is not None and abort_event.is_set():
                raise RetryAbortedError(str(exc)) from exc
            sleep(backoff_seconds * attempt)

    raise RetryExhaustedError(str(last_error)) from last_error
