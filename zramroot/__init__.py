"""Run the root filesystem from a compressed RAM block device."""

from .__version__ import __version__


__all__ = ["__version__"]
