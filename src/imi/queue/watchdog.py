"""Background heartbeat/checkpoint loop that keeps a task lease alive."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

from imi.queue.errors import QueueError
from imi.queue.repository import QueueRepository

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 1.0


class LifecycleWatchdog:
    """Extend a task lease while its execution runs elsewhere.

    The watchdog opens its own repository handle on its own thread and shares
    nothing with the executor but the stop event. It stops by itself as soon as
    a conditional heartbeat finds the task no longer leased to ``agent_id``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        db_path: Path,
        task_id: str,
        agent_id: str,
        ping_interval_seconds: float,
        checkpoint_interval_seconds: float = 0,
        sqlite_busy_timeout_ms: int = 5_000,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        if ping_interval_seconds < 0 or checkpoint_interval_seconds < 0:
            raise ValueError("Watchdog intervals must be >= 0.")
        self.db_path = db_path
        self.task_id = task_id
        self.agent_id = agent_id
        self.ping_interval_seconds = ping_interval_seconds
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.tick_seconds = tick_seconds
        self.pings = 0
        self.checkpoints = 0
        self.lease_lost = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Watchdog already started.")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"imi-watchdog-{self.task_id}",
        )
        self._thread.start()
        logger.info("Watchdog started for task %s", self.task_id)

    def stop(self) -> None:
        """Signal the loop and block until it has exited."""

        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None
        logger.info(
            "Watchdog stopped for task %s (pings=%d, checkpoints=%d)",
            self.task_id,
            self.pings,
            self.checkpoints,
        )

    def _loop(self) -> None:
        repository = QueueRepository(
            self.db_path,
            sqlite_busy_timeout_ms=self.sqlite_busy_timeout_ms,
        )
        started = time.monotonic()
        last_ping = started
        last_checkpoint = started
        try:
            while not self._stop.wait(timeout=self.tick_seconds):
                now = time.monotonic()
                try:
                    if self.ping_interval_seconds > 0 and (
                        now - last_ping >= self.ping_interval_seconds
                    ):
                        last_ping = now
                        if not repository.touch_lease(
                            task_id=self.task_id,
                            agent_id=self.agent_id,
                        ):
                            self._lease_lost()
                            return
                        self.pings += 1

                    if self.checkpoint_interval_seconds > 0 and (
                        now - last_checkpoint >= self.checkpoint_interval_seconds
                    ):
                        last_checkpoint = now
                        note = (
                            f"auto checkpoint #{self.checkpoints + 1}: still running "
                            f"after {now - started:.0f}s"
                        )
                        if not repository.checkpoint_task(
                            task_ref=self.task_id,
                            note=note,
                            agent_id=self.agent_id,
                            lease_agent_id=self.agent_id,
                        ):
                            self._lease_lost()
                            return
                        self.checkpoints += 1
                except QueueError:
                    logger.exception("Watchdog heartbeat failed for task %s", self.task_id)
        finally:
            repository.close()

    def _lease_lost(self) -> None:
        self.lease_lost = True
        logger.warning(
            "Task %s is no longer leased to %s; watchdog exiting",
            self.task_id,
            self.agent_id,
        )


def start_watchdog(  # noqa: PLR0913
    *,
    db_path: Path,
    task_id: str,
    agent_id: str,
    ping_interval_seconds: float,
    checkpoint_interval_seconds: float,
    sqlite_busy_timeout_ms: int = 5_000,
    tick_seconds: float = DEFAULT_TICK_SECONDS,
) -> LifecycleWatchdog | None:
    """Create and start a watchdog; ``None`` when both intervals are disabled."""

    if ping_interval_seconds <= 0 and checkpoint_interval_seconds <= 0:
        return None
    watchdog = LifecycleWatchdog(
        db_path=db_path,
        task_id=task_id,
        agent_id=agent_id,
        ping_interval_seconds=ping_interval_seconds,
        checkpoint_interval_seconds=checkpoint_interval_seconds,
        sqlite_busy_timeout_ms=sqlite_busy_timeout_ms,
        tick_seconds=tick_seconds,
    )
    watchdog.start()
    return watchdog
