"""Fixed-cadence job scheduler backed by threads.

Each job gets a timer thread that fires immediately and then every `cadence`
seconds. A firing runs the action on its own worker thread so a slow action
never delays the timer. Unless `allow_overlap` is set, a firing is skipped
while the previous run of the same job is still in flight.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


@dataclass
class ScheduledJob:
    """A recurring action registered with the Scheduler.

    Attributes:
        job_id (str): Unique identifier.
        cadence (float): Seconds between firings.
        action (Callable[[], object]): The callable to run on each firing.
        allow_overlap (bool): Whether firings may run concurrently.
        runs (int): Firings that started the action.
        skipped (int): Firings dropped because the previous run was in flight.
    """

    job_id: str
    cadence: float
    action: Callable[[], object]
    allow_overlap: bool = False
    runs: int = 0
    skipped: int = 0
    timer: threading.Thread | None = field(default=None, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _in_flight: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _workers: set[threading.Thread] = field(default_factory=set, repr=False)
    _workers_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    @property
    def running(self) -> bool:
        """True while a run of the action is in progress."""
        return self._in_flight.locked()

    def workers(self) -> list[threading.Thread]:
        """Worker threads whose run of the action has not finished yet."""
        with self._workers_lock:
            return list(self._workers)


class Scheduler:
    """Registers, runs and cancels fixed-cadence jobs keyed by string id."""

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        # Cancelled jobs whose last run may still be in flight.
        self._retired: list[ScheduledJob] = []
        self._lock = threading.Lock()

    def schedule(
        self,
        job_id: str,
        cadence: float,
        action: Callable[[], object],
        allow_overlap: bool = False,
    ) -> ScheduledJob:
        """Registers `action` to run now and then every `cadence` seconds.

        Args:
            job_id (str): Unique job identifier.
            cadence (float): Seconds between firings. Must be positive.
            action (Callable[[], object]): The work to perform.
            allow_overlap (bool, optional): Allow a firing while the previous
                                            run is still going. Defaults to False.

        Returns:
            ScheduledJob: The registered job.

        Raises:
            ValueError: If `job_id` is already registered or `cadence` is not positive.
        """
        if cadence <= 0:
            raise ValueError(f"Cadence must be positive, got {cadence}")

        job = ScheduledJob(job_id, cadence, action, allow_overlap=allow_overlap)
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job already scheduled: {job_id}")
            self._jobs[job_id] = job

        job.timer = threading.Thread(
            target=self._timer_loop,
            args=(job,),
            name=f"git-mirror-timer-{job_id}",
            daemon=True,
        )
        job.timer.start()
        logger.info(f"SCHEDULED {job_id}: every {cadence:g}s")
        return job

    def cancel(self, job_id: str) -> bool:
        """Stops and deregisters a job.

        A run already in progress is allowed to finish.

        Returns:
            bool: True if a job was removed, False if none was registered.
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            self._retired = [j for j in self._retired if j.workers()]
            self._retired.append(job)
        job._stop.set()
        logger.info(f"CANCELLED {job_id}")
        return True

    def get(self, job_id: str) -> ScheduledJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._jobs)

    def shutdown(self, wait: bool = False, timeout: float | None = None) -> None:
        """Cancels every job.

        Args:
            wait (bool, optional): Join each timer thread and every worker still
                                   running an action. Defaults to False.
            timeout (float | None, optional): Per-thread join timeout. Callers
                                              running git should pass at least
                                              the git timeout.
        """
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            retired = self._retired
            self._retired = []
        for job in jobs:
            job._stop.set()
        if not wait:
            return
        current = threading.current_thread()
        for job in jobs + retired:
            if job.timer is not None and job.timer is not current:
                job.timer.join(timeout)
        for job in jobs + retired:
            for worker in job.workers():
                if worker is current:
                    continue
                worker.join(timeout)
                if worker.is_alive():
                    logger.warning(
                        f"SHUTDOWN {job.job_id}: tick still running after {timeout}s"
                    )

    def _timer_loop(self, job: ScheduledJob) -> None:
        while not job._stop.is_set():
            self._fire(job)
            if job._stop.wait(job.cadence):
                break

    def _fire(self, job: ScheduledJob) -> None:
        if not job.allow_overlap and not job._in_flight.acquire(blocking=False):
            job.skipped += 1
            logger.info(f"SKIPPED {job.job_id}: previous tick still running")
            return

        job.runs += 1
        worker = threading.Thread(
            target=self._run_action,
            args=(job,),
            name=f"git-mirror-tick-{job.job_id}",
            daemon=True,
        )
        with job._workers_lock:
            job._workers.add(worker)
        try:
            worker.start()
        except RuntimeError:
            with job._workers_lock:
                job._workers.discard(worker)
            if not job.allow_overlap:
                job._in_flight.release()
            logger.exception(f"TICK ERROR {job.job_id}: could not start worker")

    def _run_action(self, job: ScheduledJob) -> None:
        try:
            job.action()
        except Exception:
            logger.exception(f"TICK ERROR {job.job_id}")
        finally:
            with job._workers_lock:
                job._workers.discard(threading.current_thread())
            if not job.allow_overlap:
                job._in_flight.release()
