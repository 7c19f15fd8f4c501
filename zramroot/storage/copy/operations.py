"""Parallel migration copy of the physical root into the RAM root.

Flow:
    1. measure the source (``du -sk``); an empty source is fatal
    2. pick the worker count from CPUs and available RAM
    3. discover top-level directories and distribute them over job bins
    4. start one CopyWorker per bin, each retrying failed units
    5. poll destination size every 2 seconds for progress
    6. cancel everything once the overall timeout is exceeded

Units that exhaust their retries are logged. Under the strict policy they
fail the copy with PartialCopyError; under best-effort they do not.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from zramroot.domain.models import CopyReport, JobBin
from zramroot.logging import EventLogger, LoggerFactory
from zramroot.storage.copy.distribution import (
    discover_units,
    distribute,
    measure_size_kib,
    thread_count,
)
from zramroot.storage.copy.filters import FilterSet
from zramroot.storage.copy.progress import MONITOR_INTERVAL, ProgressMonitor
from zramroot.storage.copy.workers import CopyWorker
from zramroot.storage.exceptions import CopyTimeoutError, PartialCopyError, SourceEmptyError
from zramroot.storage.retry import RetryPolicy


DEFAULT_TIMEOUT = 1800
DEFAULT_RETRIES = 3
RETRY_DELAY = 1.0

# Directories recreated empty in the RAM root after the copy
SKELETON_DIRS = {
    "dev": 0o755,
    "proc": 0o755,
    "sys": 0o755,
    "run": 0o755,
    "mnt": 0o755,
    "media": 0o755,
    "tmp": 0o1777,
}


@dataclass(frozen=True)
class CopyOptions:
    """Tunables for one migration copy."""

    filters: FilterSet = FilterSet()
    threads_hint: int = 0
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    retry_delay: float = RETRY_DELAY
    strict: bool = False
    debug: bool = False

    @classmethod
    def from_settings(cls, settings) -> CopyOptions:
        return cls(
            filters=FilterSet.from_settings(settings),
            threads_hint=settings.copy_threads,
            timeout=settings.copy_timeout,
            retries=settings.copy_max_retries,
            strict=settings.strict_copy,
            debug=settings.debug_mode,
        )


class MigrationCopy:
    """Copy ``source`` into ``dest`` with parallel workers.

    The collaborators (measure, popen, sleep, clock) are injectable so the
    whole engine runs in tests without touching real tools.
    """

    def __init__(
        self,
        source: Path,
        dest: Path,
        options: CopyOptions,
        *,
        cpu_count: int,
        available_mib: int,
        measure: Callable[[str], int] = measure_size_kib,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        interval: float = MONITOR_INTERVAL,
    ):
        self.source = Path(source)
        self.dest = Path(dest)
        self.options = options
        self.cpu_count = cpu_count
        self.available_mib = available_mib
        self.interval = interval
        self._measure = measure
        self._popen = popen
        self._sleep = sleep
        self._clock = clock
        self.log = LoggerFactory.for_copy()
        self.bins: list[JobBin] = []
        self.workers: list[CopyWorker] = []

    def plan(self) -> tuple[int, list[JobBin]]:
        """Measure the source and distribute the work.

        Raises:
            SourceEmptyError: If the source measures zero KiB
        """
        total_kib = self._measure(str(self.source))
        if total_kib <= 0:
            raise SourceEmptyError(str(self.source))
        threads = thread_count(self.cpu_count, self.available_mib, self.options.threads_hint)
        self.log.debug(
            f"Detected {self.cpu_count} CPU cores, {self.available_mib}MB RAM, "
            f"using {threads} parallel rsync operations"
        )
        self.log.debug(f"Total size to copy: {total_kib} KB ({total_kib // 1024} MB)")
        units = discover_units(self.source, measure=self._measure)
        self.bins = distribute(units, threads, total_kib)
        return total_kib, self.bins

    def _cancel_all(self) -> None:
        for worker in self.workers:
            worker.cancel()
        for worker in self.workers:
            worker.join(timeout=10)

    def run(self) -> CopyReport:
        """Run the copy to completion.

        Raises:
            SourceEmptyError: Nothing to copy
            CopyTimeoutError: The overall timeout elapsed first
            PartialCopyError: Units failed and the strict policy is active
        """
        total_kib, bins = self.plan()
        for pattern in self.options.filters.describe():
            self.log.debug(pattern)

        policy = RetryPolicy(attempts=self.options.retries, delay=self.options.retry_delay)
        self.workers = [
            CopyWorker(
                job_bin,
                self.source,
                self.dest,
                self.options.filters,
                policy,
                popen=self._popen,
                sleep=self._sleep,
            )
            for job_bin in bins
        ]
        monitor = ProgressMonitor(
            self.dest,
            total_kib,
            len(self.workers),
            self.log,
            measure=self._measure,
            debug=self.options.debug,
        )

        self.log.info(
            f"Copying filesystem to RAM ({len(self.workers)} parallel operations)"
        )
        monitor.start()
        start_time = self._clock()
        for worker in self.workers:
            worker.start()
            self.log.debug(f"Started job {worker.job_bin.index} ({worker.name})")

        while True:
            active = sum(1 for worker in self.workers if worker.is_alive())
            if active == 0:
                break
            monitor.poll(active)
            elapsed = self._clock() - start_time
            if elapsed > self.options.timeout:
                self.log.error(f"Copy operation timed out after {self.options.timeout:g} seconds")
                self._cancel_all()
                raise CopyTimeoutError(self.options.timeout)
            self._sleep(self.interval)

        for worker in self.workers:
            worker.join()
            if worker.error is not None:
                raise worker.error

        monitor.finish()
        duration = self._clock() - start_time
        failed = tuple(unit for worker in self.workers for unit in worker.failed_units)
        report = CopyReport(
            total_kib=total_kib,
            threads=len(self.workers),
            failed_units=failed,
            duration_seconds=duration,
        )
        self._log_statistics(report)

        if failed:
            self.log.error(f"{len(failed)} unit(s) failed to copy: {', '.join(failed)}")
            if self.options.strict:
                raise PartialCopyError(failed)
            self.log.warning("Continuing with a partial copy (best-effort policy)")
        return report

    def _log_statistics(self, report: CopyReport) -> None:
        EventLogger.log_operation_metric(
            self.log, "copy", "duration", report.duration_seconds, "s"
        )
        speed = report.speed_mib_s
        if speed is not None:
            EventLogger.log_operation_metric(self.log, "copy", "speed", speed, "MiB/s")


def create_skeleton(root: Path) -> None:
    """Recreate the pseudo-filesystem mount points skipped by the copy."""
    for name, mode in SKELETON_DIRS.items():
        path = Path(root) / name
        path.mkdir(parents=True, exist_ok=True)
        path.chmod(mode)
