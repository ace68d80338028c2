from datetime import UTC, datetime, timedelta
import logging
import threading

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from bulkloader.continuation import ContinuationLoop, ContinuationState


logger = logging.getLogger(__name__)


class ChunkChain:
    """Timer chain for a continuation loop.

    Every finished chunk schedules the next one as a one-shot job after
    ``delay_seconds``. At most one chunk job exists at any time.
    """

    def __init__(
        self,
        loop: ContinuationLoop,
        scheduler: BaseScheduler,
        *,
        delay_seconds: float | None = None,
        job_id: str = "continuation_chunk",
    ) -> None:
        self.loop = loop
        self.scheduler = scheduler
        self.delay_seconds = loop.delay_seconds if delay_seconds is None else delay_seconds
        self.job_id = job_id
        self.stopped = threading.Event()

    def start(self) -> None:
        self.loop.start()
        self._arm()

    def resume(self) -> None:
        self.loop.resume()
        self._arm()

    def pause(self) -> None:
        self.loop.pause()
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            # The chunk is already running; it will not re-arm once paused.
            pass
        self.stopped.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self.stopped.wait(timeout)

    def _arm(self) -> None:
        if not self.loop.is_running:
            self.stopped.set()
            return
        self.stopped.clear()
        self.scheduler.add_job(
            self._tick,
            "date",
            run_date=datetime.now(UTC) + timedelta(seconds=self.delay_seconds),
            id=self.job_id,
            replace_existing=True,
        )

    def _tick(self) -> None:
        try:
            more = self.loop.step()
        except Exception:
            logger.exception("continuation chunk crashed", extra=self.loop.cursor.as_dict())
            self.stopped.set()
            raise
        if more:
            self._arm()
            return
        if self.loop.state is ContinuationState.DONE:
            logger.info("continuation chain finished", extra=self.loop.cursor.as_dict())
        self.stopped.set()


def start_continuation(loop: ContinuationLoop, *, resume: bool = False) -> tuple[BackgroundScheduler, ChunkChain]:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.start()
    chain = ChunkChain(loop, scheduler)

    logger.info(
        "continuation scheduler started",
        extra={"delay_seconds": chain.delay_seconds, "resume": resume, **loop.cursor.as_dict()},
    )

    if resume:
        chain.resume()
    else:
        chain.start()
    return scheduler, chain
