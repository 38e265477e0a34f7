"""Process exit codes returned by ``dbcertscan``."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every CLI command."""

    OK = 0
    # Invalid arguments or configuration.
    VALIDATION = 2
    # The requested transport cannot run on this machine.
    ENVIRONMENT = 3
    # At least one host or instance could not be scanned.
    PROVIDER = 4
