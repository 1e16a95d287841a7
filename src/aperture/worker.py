from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Callable

from .config import load_runtime_config
from .errors import ConfigError
from .queue import TaskQueue, build_task_queue
from .storage import init_db
from .utils import configure_logging, log_event


class PollScheduler:
    """Runs ``tick`` repeatedly, arming the next run only after the previous one settles.

    A slow tick delays the next poll instead of overlapping with it.
    """

    def __init__(
        self,
        tick: Callable[[], Any],
        interval: float,
        logger: logging.Logger,
        *,
        initial_delay: float = 1.0,
    ) -> None:
        self._tick = tick
        self._interval = interval
        self._initial_delay = initial_delay
        self._logger = logger
        self._busy = threading.Lock()
        self._stopped = threading.Event()
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()

    def is_busy(self) -> bool:
        return self._busy.locked()

    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        self._stopped.clear()
        self._arm(self._initial_delay)
        log_event(self._logger, logging.INFO, "scheduler_started", interval=self._interval)

    def stop(self) -> None:
        self._stopped.set()
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        log_event(self._logger, logging.INFO, "scheduler_stopped")

    def wait(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    def wait_idle(self) -> None:
        """Block until an in-flight tick returns."""
        with self._busy:
            pass

    def run_once(self) -> bool:
        """Run one tick now. Returns False without running when a tick is in flight."""
        if not self._busy.acquire(blocking=False):
            log_event(self._logger, logging.DEBUG, "scheduler_busy_skip")
            return False
        try:
            self._tick()
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "worker_tick_failed", error=str(exc))
        finally:
            self._busy.release()
        return True

    def _fire(self) -> None:
        if self._stopped.is_set():
            return
        self.run_once()
        self._arm(self._interval)

    def _arm(self, delay: float) -> None:
        with self._timer_lock:
            if self._stopped.is_set():
                return
            timer = threading.Timer(delay, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()


def _setup_logging() -> logging.Logger:
    return configure_logging("aperture.worker")


def _build_queue(logger: logging.Logger) -> TaskQueue | None:
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    conn.close()
    return build_task_queue(config)


def run_once() -> int:
    logger = _setup_logging()
    queue = _build_queue(logger)
    if queue is None:
        return 1
    try:
        executed = queue.process_queue()
    finally:
        queue.close()
    log_event(logger, logging.INFO, "worker_pass_complete", executed=executed)
    return 0


def run_loop(sleep_seconds: float | None = None) -> int:
    logger = _setup_logging()
    queue = _build_queue(logger)
    if queue is None:
        return 1
    interval = sleep_seconds if sleep_seconds is not None else queue.config.queue.poll_seconds
    scheduler = PollScheduler(
        queue.process_queue,
        interval,
        logger,
        initial_delay=queue.config.queue.initial_delay_seconds,
    )

    def _handle_signal(signum, _frame) -> None:
        log_event(logger, logging.INFO, "worker_signal", signal=signum)
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    scheduler.start()
    try:
        while not scheduler.wait(1.0):
            pass
    finally:
        scheduler.stop()
        scheduler.wait_idle()
        queue.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aperture-worker")
    parser.add_argument("--once", action="store_true", help="Drain the queue once and exit")
    parser.add_argument("--sleep", type=float, default=None, help="Seconds between polls")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.once:
        return run_once()
    return run_loop(args.sleep)


if __name__ == "__main__":
    raise SystemExit(main())
