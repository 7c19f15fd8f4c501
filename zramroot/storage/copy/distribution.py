"""Work discovery and greedy distribution across copy workers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from zramroot.domain.models import ROOT_FILES_UNIT, JobBin, WorkUnit
from zramroot.logging import LoggerFactory
from zramroot.storage.commands import run_command


log = LoggerFactory.for_copy(job_id="distribution")

# Top-level entries that are mount points of pseudo filesystems, never data
NON_DATA_ENTRIES = frozenset({"dev", "proc", "sys", "tmp", "run", "mnt", "media", "lost+found"})
MAX_THREADS = 16
RAM_PER_THREAD_MIB = 75


def thread_count(cpu_count: int, available_mib: int, hint: int = 0) -> int:
    """``min(cores, max(1, available/75), 16)``, never below 1.

    A non-zero ``hint`` takes the place of the core count.
    """
    cores = hint if hint > 0 else cpu_count
    ram_threads = max(1, available_mib // RAM_PER_THREAD_MIB)
    return max(1, min(cores, ram_threads, MAX_THREADS))


def measure_size_kib(path: str) -> int:
    """Disk usage of ``path`` in KiB (``du -sk``), 0 if unreadable."""
    try:
        result = run_command(["du", "-sk", str(path)], check=False, log_output=False)
    except OSError as error:
        log.debug(f"du unavailable: {error}")
        return 0
    fields = (result.stdout or "").split()
    if not fields:
        return 0
    try:
        return int(fields[0])
    except ValueError:
        return 0


def discover_units(
    source: Path,
    *,
    skip: Iterable[str] = NON_DATA_ENTRIES,
    measure: Callable[[str], int] = measure_size_kib,
) -> list[WorkUnit]:
    """Top-level directories of ``source``, largest first.

    Symlinks and plain files are left to the root-files unit.
    """
    skipped = set(skip)
    units: list[WorkUnit] = []
    for entry in sorted(os.scandir(source), key=lambda item: item.name):
        if entry.name in skipped or not entry.is_dir(follow_symlinks=False):
            continue
        units.append(WorkUnit(name=entry.name, size_kib=measure(entry.path)))
    units.sort(key=lambda unit: unit.size_kib, reverse=True)
    return units


def distribute(
    units: Iterable[WorkUnit], threads: int, total_kib: Optional[int] = None
) -> list[JobBin]:
    """Assign each unit to the currently lightest bin (ties: lowest index).

    Units are taken in the given order, so pass them largest first. The
    root-files unit is appended to bin 0 carrying whatever part of
    ``total_kib`` the directory units do not account for.
    """
    if threads < 1:
        raise ValueError(f"threads must be >= 1, got {threads}")
    units = list(units)
    measured = sum(unit.size_kib for unit in units)
    if total_kib is not None and measured > total_kib:
        # Per-directory du counts a hard link once per directory, the total once
        log.debug(
            f"Directory sizes ({measured} KiB) exceed the total ({total_kib} KiB), "
            f"scaling them down"
        )
        units = [
            WorkUnit(name=unit.name, size_kib=unit.size_kib * total_kib // measured)
            for unit in units
        ]
    bins = [JobBin(index=i) for i in range(threads)]
    assigned = 0
    for unit in units:
        target = min(bins, key=lambda job_bin: (job_bin.total_kib, job_bin.index))
        target.add(unit)
        assigned += unit.size_kib
    remainder = max(0, (total_kib or 0) - assigned)
    bins[0].add(WorkUnit(name=ROOT_FILES_UNIT, size_kib=remainder))
    for job_bin in bins:
        job_bin.seal()
        log.debug(
            f"Job {job_bin.index}: {job_bin.total_kib} KiB, "
            f"units: {', '.join(job_bin.unit_names) or '-'}"
        )
    return bins
