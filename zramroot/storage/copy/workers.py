"""Copy workers: one thread per job bin, one rsync process at a time."""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from zramroot.domain.models import CopyAttempt, JobBin, WorkUnit
from zramroot.logging import EventLogger, LoggerFactory
from zramroot.storage.copy.filters import FilterSet
from zramroot.storage.exceptions import UnitCopyFailedError
from zramroot.storage.retry import RetryPolicy, retry_call


RSYNC_FLAGS = ["-a", "-H", "-x"]
# rsync exit code for a missing executable
EXIT_NOT_FOUND = 127


class _Cancelled(Exception):
    """The worker was cancelled before the unit could start."""


def build_unit_command(
    unit: WorkUnit, source: Path, dest: Path, filters: FilterSet
) -> list[str]:
    """rsync command for one work unit.

    Directory units are passed without a trailing slash so rsync's transfer
    root is the source root and ``/``-anchored patterns line up. They mirror
    (``--delete``) their own subtree only. The root-files unit copies the
    top-level non-directories and never deletes.
    """
    if unit.is_root_files:
        return [
            "rsync",
            *RSYNC_FLAGS,
            # Must precede the user rules: an include never pulls a directory
            # into this unit, so it stays disjoint from the directory units
            "--exclude=/*/",
            *filters.rsync_args(),
            f"{source}/",
            f"{dest}/",
        ]
    return [
        "rsync",
        *RSYNC_FLAGS,
        "--delete",
        *filters.rsync_args(),
        f"{source}/{unit.name}",
        f"{dest}/",
    ]


class CopyWorker(threading.Thread):
    """Process one JobBin's units strictly in order.

    A unit that exhausts its retries is recorded in ``failed_units`` and the
    worker moves on. ``cancel()`` stops the queue and terminates the running
    rsync.
    """

    def __init__(
        self,
        job_bin: JobBin,
        source: Path,
        dest: Path,
        filters: FilterSet,
        policy: RetryPolicy,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        job_id: Optional[str] = None,
    ):
        super().__init__(name=f"copy-worker-{job_bin.index}", daemon=True)
        self.job_bin = job_bin
        self.source = Path(source)
        self.dest = Path(dest)
        self.filters = filters
        self.policy = policy
        self.attempts: list[CopyAttempt] = []
        self.failed_units: list[str] = []
        self.error: Optional[BaseException] = None
        self._popen = popen
        self._sleep = sleep
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self.log = LoggerFactory.for_copy(job_id or f"copy-job-{job_bin.index}")

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            self.log.warning(f"Terminating rsync for job {self.job_bin.index}")
            process.terminate()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _copy_once(self, attempt: CopyAttempt) -> None:
        unit = attempt.unit
        if self.cancelled:
            raise _Cancelled(unit.name)
        command = build_unit_command(unit, self.source, self.dest, self.filters)
        self.log.debug(f"Running command: {' '.join(command)}")
        try:
            with self._lock:
                self._process = self._popen(
                    command,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    text=True,
                )
                process = self._process
            if self.cancelled:
                process.terminate()
            _, stderr = process.communicate()
            exit_code = process.returncode
        except OSError as error:
            attempt.last_exit_code = EXIT_NOT_FOUND
            raise UnitCopyFailedError(unit.name, EXIT_NOT_FOUND, str(error)) from error
        finally:
            with self._lock:
                self._process = None
        attempt.last_exit_code = exit_code
        if exit_code != 0:
            raise UnitCopyFailedError(unit.name, exit_code, (stderr or "").strip())

    def _copy_unit(self, unit: WorkUnit) -> None:
        attempt = CopyAttempt(unit=unit)
        self.attempts.append(attempt)

        def _run(index: int) -> None:
            attempt.retry_count = index
            self._copy_once(attempt)

        def _on_retry(index: int, error: BaseException) -> None:
            self.log.warning(f"Retry {index + 1}/{self.policy.attempts} for {unit.name}: {error}")
            if isinstance(error, UnitCopyFailedError) and error.stderr:
                self.log.debug(f"rsync stderr: {error.stderr}")

        try:
            retry_call(
                _run,
                self.policy,
                retry_on=(UnitCopyFailedError,),
                on_retry=_on_retry,
                sleep=self._sleep,
            )
        except _Cancelled:
            self.log.debug(f"Skipping {unit.name}: cancelled")
            return
        except UnitCopyFailedError as error:
            if self.cancelled:
                return
            self.failed_units.append(unit.name)
            EventLogger.log_unit_failed(
                self.log, unit.name, self.policy.attempts, error.exit_code
            )

    def run(self) -> None:
        try:
            for unit in self.job_bin.units:
                if self.cancelled:
                    break
                self._copy_unit(unit)
        except Exception as error:
            # Reported to the orchestrator, which re-raises it
            self.error = error
            self.log.exception(f"Worker {self.job_bin.index} crashed: {error}")
