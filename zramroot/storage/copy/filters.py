"""rsync filter composition.

Rules are emitted in precedence order and rsync applies the first rule
that matches, so an explicit include beats every exclude:

    1. explicit include patterns
    2. mount-on-disk paths (``/path`` and ``/path/*``)
    3. explicit exclude patterns
    4. built-in exclusions of pseudo filesystems and the journal

``FilterSet.decide()`` evaluates the same rules in Python, for logging and
tests.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from zramroot.storage.fstab import normalize_mount_on_disk


DEFAULT_EXCLUDES = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/tmp/*",
    "/run/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
    "/var/log/journal/*",
)

INCLUDE = "include"
EXCLUDE = "exclude"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    """Translate an rsync wildcard into a regex over ``/``-rooted paths."""
    anchored = pattern.startswith("/")
    body = pattern.rstrip("/") if pattern != "/" else pattern
    parts = []
    index = 0
    while index < len(body):
        char = body[index]
        if body.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    prefix = "^" if anchored else "(?:^|.*/)"
    return re.compile(prefix + "".join(parts) + "$")


def pattern_matches(pattern: str, path: str) -> bool:
    return _compile(pattern).match(path) is not None


@dataclass(frozen=True)
class FilterSet:
    """Include/exclude configuration for the migration copy."""

    includes: tuple[str, ...] = ()
    mount_on_disk: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    defaults: tuple[str, ...] = DEFAULT_EXCLUDES

    @classmethod
    def from_settings(cls, settings) -> FilterSet:
        return cls(
            includes=tuple(settings.include_patterns),
            mount_on_disk=tuple(settings.mount_on_disk),
            excludes=tuple(settings.exclude_patterns),
        )

    def rules(self) -> list[tuple[str, str]]:
        """(action, pattern) pairs, highest precedence first."""
        rules = [(INCLUDE, pattern) for pattern in self.includes]
        for path in normalize_mount_on_disk(self.mount_on_disk):
            rules.append((EXCLUDE, f"/{path}"))
            rules.append((EXCLUDE, f"/{path}/*"))
        rules.extend((EXCLUDE, pattern) for pattern in self.excludes)
        rules.extend((EXCLUDE, pattern) for pattern in self.defaults)
        return rules

    def rsync_args(self) -> list[str]:
        return [f"--{action}={pattern}" for action, pattern in self.rules()]

    def _first_match(self, path: str) -> Optional[str]:
        for action, pattern in self.rules():
            if pattern_matches(pattern, path):
                return action
        return None

    def decide(self, path: str) -> bool:
        """True if rsync would copy ``path`` (absolute, relative to the source root).

        A path is skipped when it, or any directory above it, is excluded by
        its first matching rule.
        """
        parts = [part for part in path.split("/") if part]
        current = ""
        for part in parts:
            current = f"{current}/{part}"
            if self._first_match(current) == EXCLUDE:
                return False
        return True

    def describe(self) -> Iterable[str]:
        for action, pattern in self.rules():
            yield f"{action.capitalize()}: {pattern}"
