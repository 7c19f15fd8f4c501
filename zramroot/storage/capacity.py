"""RAM device capacity planning.

Sizing is a pure function of its inputs: the same used space, algorithm
and memory figures always give the same target. All arithmetic is done on
exact fractions and rounded up once, so the result never depends on float
rounding.

Algorithm (sizes in MiB):
    1. with_buffer = used * (1 + buffer/100)
    2. compressed  = ceil(with_buffer / ratio)
    3. required    = compressed + min_free_target + ram_min_free
       fail when available < required
    4. tight mode when available < compressed + min_free_target + ram_pref_free:
           target = compressed + min_free_target
    5. otherwise (generous mode):
           target = compressed + min_free_target
                    + min(max_free_target, available - ram_pref_free - compressed)
    6. floor: target >= ceil(1.25 * exact compressed)

Example:
    >>> plan = plan_capacity(10000, 10, "lz4hc", MemoryInfo(8000, 6000), margins)
    >>> plan.target_size_mib
    5500
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction

from zramroot.domain.models import CapacityPlan, PlanMode
from zramroot.logging import LoggerFactory
from zramroot.storage.exceptions import InsufficientRamError
from zramroot.storage.system import MemoryInfo


log = LoggerFactory.for_planner()

# Estimated compression ratio per algorithm. Policy constants, not measured.
COMPRESSION_RATIOS = {
    "zstd": 3.0,
    "lz4hc": 2.5,
    "lz4": 2.0,
    "lzo": 1.8,
    "lzo-rle": 1.8,
}
DEFAULT_COMPRESSION_RATIO = 2.2

SAFETY_FLOOR = Fraction(5, 4)

SWAP_SHARE = Fraction(1, 4)
SWAP_MIN_MIB = 512
SWAP_MAX_MIB = 4096


@dataclass(frozen=True)
class Margins:
    """Free-space margins, all in MiB."""

    ram_min_free: int = 512
    ram_pref_free: int = 1024
    min_free_target: int = 256
    max_free_target: int = 35840

    @classmethod
    def from_settings(cls, settings) -> Margins:
        return cls(
            ram_min_free=settings.ram_min_free_mib,
            ram_pref_free=settings.ram_pref_free_mib,
            min_free_target=settings.zram_min_free_mib,
            max_free_target=settings.zram_max_free_mib,
        )


def compression_ratio(algorithm: str) -> float:
    return COMPRESSION_RATIOS.get(algorithm, DEFAULT_COMPRESSION_RATIO)


def _ceil(value: Fraction) -> int:
    return math.ceil(value)


def plan_capacity(
    used_mib: int,
    buffer_percent: int,
    algorithm: str,
    memory: MemoryInfo,
    margins: Margins,
) -> CapacityPlan:
    """Compute the RAM device size for a source using ``used_mib``.

    Raises:
        InsufficientRamError: If available RAM cannot hold the compressed
            copy plus the minimum margins
        ValueError: On negative sizes
    """
    if used_mib < 0 or buffer_percent < 0:
        raise ValueError("used space and buffer percent must not be negative")
    ratio = compression_ratio(algorithm)
    exact_ratio = Fraction(str(ratio))

    with_buffer = Fraction(used_mib) * (100 + buffer_percent) / 100
    exact_compressed = with_buffer / exact_ratio
    compressed = _ceil(exact_compressed)

    required = compressed + margins.min_free_target + margins.ram_min_free
    available = memory.available_mib
    log.debug(
        f"Sizing: used={used_mib}MiB with_buffer={float(with_buffer):.1f}MiB "
        f"ratio={ratio:g} compressed={compressed}MiB required={required}MiB "
        f"available={available}MiB"
    )
    if available < required:
        raise InsufficientRamError(required, available)

    if available < compressed + margins.min_free_target + margins.ram_pref_free:
        target = compressed + margins.min_free_target
        mode = PlanMode.TIGHT
    else:
        extra = min(margins.max_free_target, available - margins.ram_pref_free - compressed)
        target = compressed + margins.min_free_target + extra
        mode = PlanMode.GENEROUS

    floor = _ceil(exact_compressed * SAFETY_FLOOR)
    if target < floor:
        log.debug(f"Raising target {target}MiB to safety floor {floor}MiB")
        target = floor
        mode = PlanMode.FLOOR

    plan = CapacityPlan(
        used_source_mib=used_mib,
        buffer_percent=buffer_percent,
        compression_ratio=ratio,
        ram_total_mib=memory.total_mib,
        ram_available_mib=available,
        min_free_ram_mib=margins.ram_min_free,
        pref_free_ram_mib=margins.ram_pref_free,
        min_free_target_mib=margins.min_free_target,
        max_free_target_mib=margins.max_free_target,
        compressed_mib=compressed,
        target_size_mib=target,
        mode=mode,
    )
    log.info(f"Capacity plan: {plan.summary()}")
    return plan


def explicit_plan(
    size_mib: int,
    used_mib: int,
    buffer_percent: int,
    algorithm: str,
    memory: MemoryInfo,
    margins: Margins,
) -> CapacityPlan:
    """Plan for a configured size; the size is used verbatim."""
    ratio = compression_ratio(algorithm)
    with_buffer = Fraction(used_mib) * (100 + buffer_percent) / 100
    plan = CapacityPlan(
        used_source_mib=used_mib,
        buffer_percent=buffer_percent,
        compression_ratio=ratio,
        ram_total_mib=memory.total_mib,
        ram_available_mib=memory.available_mib,
        min_free_ram_mib=margins.ram_min_free,
        pref_free_ram_mib=margins.ram_pref_free,
        min_free_target_mib=margins.min_free_target,
        max_free_target_mib=margins.max_free_target,
        compressed_mib=_ceil(with_buffer / Fraction(str(ratio))),
        target_size_mib=size_mib,
        mode=PlanMode.EXPLICIT,
    )
    log.info(f"Using configured RAM device size: {size_mib}MiB")
    return plan


def swap_size_mib(total_ram_mib: int, configured_mib: int = 0) -> int:
    """Swap device size: configured, or 25% of RAM clamped to [512, 4096] MiB."""
    if configured_mib > 0:
        return configured_mib
    size = int(Fraction(total_ram_mib) * SWAP_SHARE)
    return max(SWAP_MIN_MIB, min(SWAP_MAX_MIB, size))
