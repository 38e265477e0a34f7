"""dbcertscan package bootstrap.

Lightweight metadata shared by the CLI, the documentation build and the
packaging machinery.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the version from this file (see ``pyproject.toml``).
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
