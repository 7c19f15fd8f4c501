"""Configuration file loading.

The boot hook reads a shell-style ``KEY=value`` file. Values may be quoted
and lines starting with ``#`` are comments. The parsed result is an
immutable ``Settings`` object passed explicitly to every stage.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from zramroot.logging import get_logger
from zramroot.storage.exceptions import ConfigError


log = get_logger(source="config", tags=["config"])

CONFIG_PATH = Path(os.environ.get("ZRAMROOT_CONFIG", "/etc/zramroot.conf"))

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_LOG_DIR = "/var/log"
DEFAULT_COPY_TIMEOUT = 1800
DEFAULT_COPY_RETRIES = 3

COPY_POLICY_BEST_EFFORT = "best-effort"
COPY_POLICY_STRICT = "strict"

SUPPORTED_FS_TYPES = ("ext4", "btrfs", "xfs")

DEFAULT_SETTINGS: dict[str, str] = {
    "TRIGGER_PARAMETER": "zramroot",
    "DEBUG_MODE": "no",
    "DEBUG_LOG_DIR": DEFAULT_LOG_DIR,
    "DEBUG_LOG_DEVICE": "",
    "DEBUG_ROOT_MOUNT": "",
    "ZRAM_SIZE_MiB": "0",
    "ZRAM_ALGO": "lz4",
    "ZRAM_FS_TYPE": "ext4",
    "ZRAM_MOUNT_OPTS": "noatime",
    "RAM_MIN_FREE_MiB": "512",
    "ZRAM_MIN_FREE_MiB": "256",
    "RAM_PREF_FREE_MiB": "1024",
    "ZRAM_MAX_FREE_MiB": "35840",
    "ZRAM_BUFFER_PERCENT": "10",
    "ZRAM_DEVICE_NUM": "0",
    "ZRAM_SWAP_ENABLED": "yes",
    "ZRAM_SWAP_DEVICE_NUM": "1",
    "ZRAM_SWAP_SIZE_MiB": "0",
    "ZRAM_SWAP_ALGO": "lz4",
    "ZRAM_SWAP_PRIORITY": "10",
    "ZRAM_INCLUDE_PATTERNS": "",
    "ZRAM_EXCLUDE_PATTERNS": "",
    "ZRAM_MOUNT_ON_DISK": "",
    "ZRAM_PHYSICAL_ROOT_OPTS": "rw",
    "WAIT_TIMEOUT": "120",
    "ZRAM_MAX_ATTEMPTS": "10",
    "COPY_THREADS": "0",
    "COPY_TIMEOUT": str(DEFAULT_COPY_TIMEOUT),
    "COPY_MAX_RETRIES": str(DEFAULT_COPY_RETRIES),
    "COPY_FAILURE_POLICY": COPY_POLICY_BEST_EFFORT,
}

_TRUE_VALUES = {"yes", "true", "1", "on"}
_FALSE_VALUES = {"no", "false", "0", "off", ""}


@dataclass(frozen=True)
class Settings:
    """Typed view of the configuration file."""

    trigger_parameter: str = "zramroot"
    debug_mode: bool = False
    debug_log_dir: str = DEFAULT_LOG_DIR
    debug_log_device: str = ""
    debug_root_mount: str = ""
    zram_size_mib: int = 0
    zram_algo: str = "lz4"
    zram_fs_type: str = "ext4"
    zram_mount_opts: str = "noatime"
    ram_min_free_mib: int = 512
    zram_min_free_mib: int = 256
    ram_pref_free_mib: int = 1024
    zram_max_free_mib: int = 35840
    zram_buffer_percent: int = 10
    zram_device_num: int = 0
    zram_swap_enabled: bool = True
    zram_swap_device_num: int = 1
    zram_swap_size_mib: int = 0
    zram_swap_algo: str = "lz4"
    zram_swap_priority: int = 10
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    mount_on_disk: tuple[str, ...] = ()
    physical_root_opts: str = "rw"
    wait_timeout: int = 120
    max_attempts: int = 10
    copy_threads: int = 0
    copy_timeout: int = DEFAULT_COPY_TIMEOUT
    copy_max_retries: int = DEFAULT_COPY_RETRIES
    copy_failure_policy: str = COPY_POLICY_BEST_EFFORT

    @property
    def strict_copy(self) -> bool:
        return self.copy_failure_policy == COPY_POLICY_STRICT

    @property
    def keeps_physical_root(self) -> bool:
        return bool(self.mount_on_disk)

    @property
    def log_dir(self) -> str:
        """Log directory relative to the physical root; never the bare root."""
        if self.debug_log_dir in ("", "/"):
            return DEFAULT_LOG_DIR
        return self.debug_log_dir


def _parse_str(key: str, value: str) -> str:
    return value


def _parse_int(key: str, value: str) -> int:
    try:
        number = int(value.strip())
    except ValueError:
        raise ConfigError(key, value, "expected an integer") from None
    if number < 0:
        raise ConfigError(key, value, "must not be negative")
    return number


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(key, value, "expected yes or no")


def _parse_list(key: str, value: str) -> tuple[str, ...]:
    return tuple(value.split())


def _parse_fs_type(key: str, value: str) -> str:
    if value not in SUPPORTED_FS_TYPES:
        raise ConfigError(key, value, f"expected one of {', '.join(SUPPORTED_FS_TYPES)}")
    return value


def _parse_policy(key: str, value: str) -> str:
    if value not in (COPY_POLICY_BEST_EFFORT, COPY_POLICY_STRICT):
        raise ConfigError(key, value, "expected best-effort or strict")
    return value


# Config file key -> (Settings field, parser)
_KEYS = {
    "TRIGGER_PARAMETER": ("trigger_parameter", _parse_str),
    "DEBUG_MODE": ("debug_mode", _parse_bool),
    "DEBUG_LOG_DIR": ("debug_log_dir", _parse_str),
    "DEBUG_LOG_DEVICE": ("debug_log_device", _parse_str),
    "DEBUG_ROOT_MOUNT": ("debug_root_mount", _parse_str),
    "ZRAM_SIZE_MiB": ("zram_size_mib", _parse_int),
    "ZRAM_ALGO": ("zram_algo", _parse_str),
    "ZRAM_FS_TYPE": ("zram_fs_type", _parse_fs_type),
    "ZRAM_MOUNT_OPTS": ("zram_mount_opts", _parse_str),
    "RAM_MIN_FREE_MiB": ("ram_min_free_mib", _parse_int),
    "ZRAM_MIN_FREE_MiB": ("zram_min_free_mib", _parse_int),
    "RAM_PREF_FREE_MiB": ("ram_pref_free_mib", _parse_int),
    "ZRAM_MAX_FREE_MiB": ("zram_max_free_mib", _parse_int),
    "ZRAM_BUFFER_PERCENT": ("zram_buffer_percent", _parse_int),
    "ZRAM_DEVICE_NUM": ("zram_device_num", _parse_int),
    "ZRAM_SWAP_ENABLED": ("zram_swap_enabled", _parse_bool),
    "ZRAM_SWAP_DEVICE_NUM": ("zram_swap_device_num", _parse_int),
    "ZRAM_SWAP_SIZE_MiB": ("zram_swap_size_mib", _parse_int),
    "ZRAM_SWAP_ALGO": ("zram_swap_algo", _parse_str),
    "ZRAM_SWAP_PRIORITY": ("zram_swap_priority", _parse_int),
    "ZRAM_INCLUDE_PATTERNS": ("include_patterns", _parse_list),
    "ZRAM_EXCLUDE_PATTERNS": ("exclude_patterns", _parse_list),
    "ZRAM_MOUNT_ON_DISK": ("mount_on_disk", _parse_list),
    "ZRAM_PHYSICAL_ROOT_OPTS": ("physical_root_opts", _parse_str),
    "WAIT_TIMEOUT": ("wait_timeout", _parse_int),
    "ZRAM_MAX_ATTEMPTS": ("max_attempts", _parse_int),
    "COPY_THREADS": ("copy_threads", _parse_int),
    "COPY_TIMEOUT": ("copy_timeout", _parse_int),
    "COPY_MAX_RETRIES": ("copy_max_retries", _parse_int),
    "COPY_FAILURE_POLICY": ("copy_failure_policy", _parse_policy),
}


def parse_config_text(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines into a raw string mapping.

    Raises:
        ConfigError: If a line cannot be tokenized (e.g. unbalanced quotes)
    """
    values: dict[str, str] = {}
    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export "):].lstrip()
        key, sep, raw_value = stripped.partition("=")
        key = key.strip()
        if not sep or not key:
            log.debug(f"Ignoring line {number}: no assignment")
            continue
        try:
            tokens = shlex.split(raw_value, comments=True)
        except ValueError as error:
            raise ConfigError(key, raw_value, f"line {number}: {error}") from None
        values[key] = " ".join(tokens)
    return values


def settings_from_mapping(values: dict[str, Any]) -> Settings:
    """Build Settings from raw string values, defaults filling the gaps."""
    merged = dict(DEFAULT_SETTINGS)
    for key, value in values.items():
        if key not in _KEYS:
            log.debug(f"Ignoring unknown configuration key {key}")
            continue
        merged[key] = str(value)
    kwargs = {}
    for key, (field_name, parser) in _KEYS.items():
        kwargs[field_name] = parser(key, merged[key])
    settings = Settings(**kwargs)
    if settings.copy_max_retries < 1:
        raise ConfigError("COPY_MAX_RETRIES", merged["COPY_MAX_RETRIES"], "must be at least 1")
    if settings.max_attempts < 1:
        raise ConfigError("ZRAM_MAX_ATTEMPTS", merged["ZRAM_MAX_ATTEMPTS"], "must be at least 1")
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from ``path`` (default: CONFIG_PATH).

    A missing or unreadable file yields defaults.

    Raises:
        ConfigError: If the file holds an invalid value
    """
    config_path = Path(path) if path is not None else CONFIG_PATH
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning(f"Config file {config_path} not found, using defaults")
        return settings_from_mapping({})
    except OSError as error:
        log.warning(f"Cannot read config file {config_path}: {error}, using defaults")
        return settings_from_mapping({})
    return settings_from_mapping(parse_config_text(text))
