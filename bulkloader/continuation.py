from collections.abc import Callable, Sequence
from enum import Enum
import logging
import queue
import time

from bulkloader.client import EnrichResponse
from bulkloader.schemas import ContinuationCursor


logger = logging.getLogger(__name__)

EnrichFn = Callable[[list[str]], EnrichResponse]


class ContinuationState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"


CursorSaver = Callable[[ContinuationCursor, ContinuationState], None]


class InvalidTransitionError(RuntimeError):
    pass


class ContinuationLoop:
    def __init__(
        self,
        identifiers: Sequence[str],
        enrich: EnrichFn,
        *,
        chunk_size: int = 20,
        delay_seconds: float = 0.5,
        channel: "queue.Queue[dict[str, object]] | None" = None,
        save_cursor: CursorSaver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.identifiers = list(identifiers)
        self.enrich = enrich
        self.chunk_size = chunk_size
        self.delay_seconds = delay_seconds
        self.channel = channel
        self.save_cursor = save_cursor
        self.sleep = sleep
        self.cursor = ContinuationCursor(total=len(self.identifiers))
        self.state = ContinuationState.IDLE

    @classmethod
    def restore(
        cls,
        identifiers: Sequence[str],
        enrich: EnrichFn,
        cursor: ContinuationCursor,
        **kwargs,
    ) -> "ContinuationLoop":
        """Rebuild a loop from a persisted cursor, ready to ``resume()``."""
        loop = cls(identifiers, enrich, **kwargs)
        loop.cursor = ContinuationCursor(
            next_index=cursor.next_index,
            total=len(loop.identifiers),
            done_count=min(cursor.done_count, len(loop.identifiers)),
            error_count=cursor.error_count,
        )
        if loop.cursor.next_index >= loop.cursor.total:
            loop.state = ContinuationState.DONE
        else:
            loop.state = ContinuationState.PAUSED
        return loop

    @property
    def is_running(self) -> bool:
        return self.state is ContinuationState.RUNNING

    def start(self) -> None:
        if self.state in (ContinuationState.RUNNING, ContinuationState.PAUSED):
            raise InvalidTransitionError(f"cannot start from {self.state.value}")
        # A new run always begins from the first identifier.
        self.cursor = ContinuationCursor(total=len(self.identifiers))
        self.state = ContinuationState.DONE if not self.identifiers else ContinuationState.RUNNING
        logger.info("continuation started", extra={"total": self.cursor.total})
        self._publish()

    def pause(self) -> None:
        if self.state is not ContinuationState.RUNNING:
            raise InvalidTransitionError(f"cannot pause from {self.state.value}")
        self.state = ContinuationState.PAUSED
        logger.info("continuation paused", extra=self.cursor.as_dict())
        self._publish()

    def resume(self) -> None:
        if self.state is not ContinuationState.PAUSED:
            raise InvalidTransitionError(f"cannot resume from {self.state.value}")
        self.state = ContinuationState.RUNNING
        logger.info("continuation resumed", extra=self.cursor.as_dict())
        self._publish()

    def step(self) -> bool:
        """Process one chunk. Returns True while another chunk should follow."""
        if self.state is not ContinuationState.RUNNING:
            return False

        cursor = self.cursor
        if cursor.next_index < cursor.total:
            chunk = self.identifiers[cursor.next_index : cursor.next_index + self.chunk_size]
            try:
                response = self.enrich(chunk)
            except Exception as exc:
                # Failed chunks are counted and skipped, never retried.
                logger.warning(
                    "enrichment chunk failed",
                    extra={"next_index": cursor.next_index, "chunk_size": len(chunk), "error": str(exc)},
                )
                cursor.error_count += len(chunk)
            else:
                cursor.done_count = min(cursor.total, cursor.done_count + response.processed)
                cursor.error_count += response.errors
            cursor.next_index += len(chunk)

        if cursor.next_index >= cursor.total:
            self.state = ContinuationState.DONE
            logger.info("continuation finished", extra=cursor.as_dict())

        self._publish()
        return self.state is ContinuationState.RUNNING

    def run(self) -> ContinuationState:
        """Drive the loop on the calling thread until it pauses or finishes."""
        while self.step():
            self.sleep(self.delay_seconds)
        return self.state

    def snapshot(self) -> dict[str, object]:
        return {"state": self.state.value, **self.cursor.as_dict()}

    def _publish(self) -> None:
        if self.save_cursor is not None:
            self.save_cursor(self.cursor, self.state)
        if self.channel is not None:
            self.channel.put(self.snapshot())
