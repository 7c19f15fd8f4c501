"""Command execution utilities.

All external tools (blkid, lvm, mkfs, mount, rsync, ...) go through these
helpers so commands are logged uniformly and tests can patch one place.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Optional, Sequence

from zramroot.logging import get_logger


log = get_logger(source="cmd", tags=["command"])


def command_exists(name: str) -> bool:
    """Check whether an executable is on PATH."""
    return shutil.which(name) is not None


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run a command capturing text output.

    Args:
        command: Argument list (never a shell string)
        check: Raise CalledProcessError on non-zero exit
        log_output: Log stdout/stderr at DEBUG level
        log_command: Log the command line and its return code
        input_text: Text fed to stdin
        timeout: Seconds before the command is killed

    Raises:
        subprocess.CalledProcessError: If check is set and the command fails
        FileNotFoundError: If the executable does not exist
    """
    command = list(command)
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def try_command(command: Sequence[str]) -> bool:
    """Run a best-effort command; True if it ran and exited 0."""
    try:
        result = run_command(command, check=False, log_output=False)
    except (OSError, subprocess.SubprocessError) as error:
        log.debug(f"{command[0]} unavailable: {error}")
        return False
    return result.returncode == 0
