"""Host resource readers: memory, CPUs, used space, boot id."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from zramroot.domain.models import MIB


BOOT_ID_PATH = Path("/proc/sys/kernel/random/boot_id")
SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")


@dataclass(frozen=True)
class MemoryInfo:
    """System memory in MiB."""

    total_mib: int
    available_mib: int


def get_memory_info() -> MemoryInfo:
    memory = psutil.virtual_memory()
    return MemoryInfo(
        total_mib=memory.total // MIB,
        available_mib=memory.available // MIB,
    )


def get_cpu_count() -> int:
    """Logical CPU count, at least 1."""
    return psutil.cpu_count(logical=True) or 1


def get_used_space_mib(path: str) -> int:
    """Used space of the filesystem mounted at ``path``, in MiB."""
    return psutil.disk_usage(str(path)).used // MIB


def read_boot_id(path: Path = BOOT_ID_PATH) -> Optional[str]:
    try:
        boot_id = Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return boot_id or None


def is_systemd_initramfs(runtime_dir: Path = SYSTEMD_RUNTIME_DIR) -> bool:
    return Path(runtime_dir).is_dir()
