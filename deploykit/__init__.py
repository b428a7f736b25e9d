"""Privileged operating-system installation backend."""

from .__version__ import __version__

__all__ = ["__version__"]
