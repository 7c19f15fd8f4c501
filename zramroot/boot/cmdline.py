"""Kernel command line access."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional


PROC_CMDLINE = Path("/proc/cmdline")


class KernelCmdline:
    """Parsed ``/proc/cmdline``.

    Example:
        >>> cmdline = KernelCmdline.from_string("root=UUID=abcd zramroot quiet")
        >>> cmdline.has("zramroot")
        True
        >>> cmdline.get("root")
        'UUID=abcd'
    """

    def __init__(self, arguments: list[str]):
        self.arguments = list(arguments)

    @classmethod
    def from_string(cls, text: str) -> KernelCmdline:
        try:
            return cls(shlex.split(text))
        except ValueError:
            # Unbalanced quotes: fall back to plain whitespace splitting
            return cls(text.split())

    @classmethod
    def read(cls, path: Path = PROC_CMDLINE) -> KernelCmdline:
        try:
            return cls.from_string(Path(path).read_text(encoding="utf-8"))
        except OSError:
            return cls([])

    def _values(self, name: str) -> list[str]:
        prefix = f"{name}="
        return [arg[len(prefix):] for arg in self.arguments if arg.startswith(prefix)]

    def has(self, name: str) -> bool:
        """True if ``name`` appears bare or as ``name=value``."""
        return any(arg == name or arg.startswith(f"{name}=") for arg in self.arguments)

    def get(self, name: str) -> Optional[str]:
        """Value of the last ``name=`` occurrence, None if absent."""
        values = self._values(name)
        return values[-1] if values else None

    def get_all(self, name: str) -> list[str]:
        """Every value given for ``name``, split on whitespace."""
        result: list[str] = []
        for value in self._values(name):
            result.extend(value.split())
        return result

    def get_int(self, name: str) -> Optional[int]:
        value = self.get(name)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @property
    def root(self) -> Optional[str]:
        return self.get("root")

    @property
    def rootdelay(self) -> Optional[int]:
        return self.get_int("rootdelay")

    @property
    def luks_names(self) -> list[str]:
        return self.get_all("rd.luks.name")

    @property
    def luks_uuids(self) -> list[str]:
        return self.get_all("rd.luks.uuid")

    @property
    def lvm_volumes(self) -> list[str]:
        return self.get_all("rd.lvm.lv")
