"""Grow-and-clone an NTFS partition onto a differently sized disk."""

from .__version__ import __version__

__all__ = ["__version__"]
