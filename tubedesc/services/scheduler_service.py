from __future__ import annotations

import errno
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from tubedesc.services.job_runner import JobRunner
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.scheduler")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class SchedulerService:
    """
    Background loop that drains due jobs and queues periodic channel syncs.

    Only one process sharing a data directory runs the loop; the others skip
    start-up when the lock file is already held.
    """

    def __init__(
        self,
        job_runner: JobRunner,
        poll_interval_seconds: int,
        *,
        channel_sync_interval_seconds: int,
        jobs_per_tick: int = 10,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._job_runner = job_runner
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._channel_sync_interval_seconds = max(60, channel_sync_interval_seconds)
        self._jobs_per_tick = max(1, jobs_per_tick)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tubedesc-scheduler")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def run_once(self, *, enqueue_syncs: bool) -> None:
        if enqueue_syncs:
            self._run_sync_enqueue_tick()
        self._run_jobs_tick()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning("scheduler single-instance lock unavailable on this platform; starting")
            return True

        lock_path = self._lock_path
        lock_file: Any | None = None
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if lock_file is not None:
                try:
                    lock_file.close()
                except OSError:
                    pass
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info("scheduler start skipped; lock held by another process path=%s", lock_path)
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("scheduler lock file pid write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                pass
            self._lock_file = None
            self._lock_acquired = False

    def _run_loop(self) -> None:
        next_jobs_tick = 0.0
        next_sync_tick = 0.0
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_sync_tick:
                self._run_sync_enqueue_tick()
                next_sync_tick = now + self._channel_sync_interval_seconds

            if now >= next_jobs_tick:
                try:
                    self._run_jobs_tick()
                except Exception:
                    LOGGER.warning("scheduler jobs tick failed", exc_info=True)
                next_jobs_tick = now + self._poll_interval_seconds

            sleep_for_seconds = min(next_jobs_tick, next_sync_tick) - now
            self._stop_event.wait(max(0.0, sleep_for_seconds))

    def _run_jobs_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type="jobs")
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start", tick_id=tick_id, tick_type="jobs")
        try:
            stats = self._job_runner.process_due_jobs(limit=self._jobs_per_tick)
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                tick_type="jobs",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                tick_type="jobs",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
                attempted=stats.attempted,
            )
        finally:
            reset_contextvars(**tick_tokens)

    def _run_sync_enqueue_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_tick_type="channel_sync")
        started_at = time.perf_counter()
        try:
            enqueued = self._job_runner.enqueue_scheduled_syncs()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                tick_type="channel_sync",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled channel sync enqueue failed", exc_info=True)
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                tick_type="channel_sync",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
                enqueued=enqueued,
            )
        finally:
            reset_contextvars(**tick_tokens)
