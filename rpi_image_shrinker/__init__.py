"""Shrink a Raspberry Pi SD card into a minimal, redistributable image."""

from .__version__ import __version__

__all__ = ["__version__"]
