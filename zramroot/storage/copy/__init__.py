"""Migration copy engine.

This package copies the physical root into the RAM root with parallel,
retrying rsync workers.

Main Functions:
    - MigrationCopy: Orchestrates sizing, distribution, workers and progress
    - create_skeleton(): Recreate pseudo-filesystem mount points afterwards

Helper Functions:
    - thread_count(): Worker count from CPUs and available RAM
    - discover_units() / distribute(): Greedy load balancing over job bins
    - FilterSet: Include/exclude precedence for rsync
    - render_progress_bar(): 50-column progress line
"""

from .distribution import discover_units, distribute, measure_size_kib, thread_count
from .filters import DEFAULT_EXCLUDES, FilterSet
from .operations import CopyOptions, MigrationCopy, create_skeleton
from .progress import ProgressMonitor, compute_percent, render_progress_bar
from .workers import CopyWorker, build_unit_command


__all__ = [
    "DEFAULT_EXCLUDES",
    "CopyOptions",
    "CopyWorker",
    "FilterSet",
    "MigrationCopy",
    "ProgressMonitor",
    "build_unit_command",
    "compute_percent",
    "create_skeleton",
    "discover_units",
    "distribute",
    "measure_size_kib",
    "render_progress_bar",
    "thread_count",
]
